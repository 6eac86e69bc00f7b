"""
Prometheus Metrics for the Passkey Server
Exposes ceremony and challenge ledger counters for monitoring
"""

from prometheus_client import Counter, Histogram, Info
from functools import wraps
import time

from passkey_server.core.config import settings
from passkey_server.core.exceptions import CeremonyError


# Application info
passkey_info = Info('passkey_server', 'Passkey server application information')
passkey_info.info({
    'version': settings.VERSION,
    'component': 'ceremony_coordinator'
})

# Ceremony Metrics
ceremonies_total = Counter(
    'passkey_ceremonies_total',
    'Total passkey ceremony steps',
    ['ceremony', 'step', 'outcome']
)

ceremony_duration_seconds = Histogram(
    'passkey_ceremony_duration_seconds',
    'Ceremony step duration in seconds',
    ['ceremony', 'step'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

# Challenge Ledger Metrics
challenges_issued_total = Counter(
    'passkey_challenges_issued_total',
    'Total challenges recorded in the ledger',
    ['kind']
)

challenges_evicted_total = Counter(
    'passkey_challenges_evicted_total',
    'Total unconsumed challenges evicted after their TTL'
)

replays_rejected_total = Counter(
    'passkey_replays_rejected_total',
    'Authentications rejected by the signature counter check'
)


def track_ceremony(ceremony: str, step: str):
    """Decorator to record outcome and duration of a coordinator step"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()
            outcome = 'success'
            try:
                return await func(*args, **kwargs)
            except CeremonyError:
                outcome = 'rejected'
                raise
            except Exception:
                outcome = 'error'
                raise
            finally:
                ceremonies_total.labels(
                    ceremony=ceremony,
                    step=step,
                    outcome=outcome
                ).inc()
                ceremony_duration_seconds.labels(
                    ceremony=ceremony,
                    step=step
                ).observe(time.time() - start_time)
        return wrapper
    return decorator
