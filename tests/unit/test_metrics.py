import pytest
from prometheus_client import REGISTRY

from passkey_server.core.config import settings
from passkey_server.core.exceptions import VerificationFailed
from passkey_server.core.metrics import track_ceremony


def _count(outcome: str) -> float:
    return REGISTRY.get_sample_value(
        "passkey_ceremonies_total",
        {"ceremony": "registration", "step": "test", "outcome": outcome},
    ) or 0.0

def test_info_reports_configured_version():
    value = REGISTRY.get_sample_value(
        "passkey_server_info",
        {"version": settings.VERSION, "component": "ceremony_coordinator"},
    )

    assert value == 1.0

@pytest.mark.asyncio
async def test_track_ceremony_counts_outcomes():
    # Arrange
    @track_ceremony("registration", "test")
    async def step(error=None):
        if error is not None:
            raise error
        return "done"

    before = {o: _count(o) for o in ("success", "rejected", "error")}

    # Act
    assert await step() == "done"
    with pytest.raises(VerificationFailed):
        await step(VerificationFailed("rejected"))
    with pytest.raises(RuntimeError):
        await step(RuntimeError("boom"))

    # Assert
    assert _count("success") == before["success"] + 1
    assert _count("rejected") == before["rejected"] + 1
    assert _count("error") == before["error"] + 1
