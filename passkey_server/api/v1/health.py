from fastapi import APIRouter, Request
from passkey_server.core.config import settings

router = APIRouter()

@router.get("")
def health_check(request: Request):
    ledger = getattr(request.app.state, "ledger", None)
    return {
        "status": "ok",
        "version": settings.VERSION,
        "rpId": settings.RP_ID,
        "ledger": type(ledger).__name__ if ledger is not None else None,
    }
