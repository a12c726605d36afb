from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import JSONResponse

from ...config import Settings
from ...domain.models import SummaryRequest
from ...security.identity import IdentityError, TokenVerifier, bearer_token
from ...services.orchestrator import SummaryOrchestrator
from ..deps import get_orchestrator, get_settings, get_token_verifier

logger = logging.getLogger("aligna")

router = APIRouter(tags=["summary"])


@router.post("/ai-summary")
def create_summary(
    payload: Optional[SummaryRequest] = None,
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    verifier: TokenVerifier = Depends(get_token_verifier),
    orchestrator: SummaryOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Return the shared summary for a session, generating it if nobody has yet."""

    missing = settings.missing()
    if missing:
        return JSONResponse({"error": f"Missing {' or '.join(missing)}"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    token = bearer_token(authorization)
    if not token:
        return JSONResponse({"error": "Missing Authorization token"}, status_code=status.HTTP_401_UNAUTHORIZED)

    try:
        user_id = verifier.verify(token)
    except IdentityError as exc:
        return JSONResponse({"error": exc.message, "details": exc.details}, status_code=status.HTTP_401_UNAUTHORIZED)

    session_id = payload.sessionId if payload else None
    if not session_id:
        return JSONResponse({"error": "Missing sessionId"}, status_code=status.HTTP_400_BAD_REQUEST)

    try:
        result = orchestrator.run(session_id, user_id)
    except Exception as exc:
        logger.exception("summary request failed for session %s", session_id)
        return JSONResponse({"error": str(exc)}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(result.body, status_code=result.status_code, headers=result.headers or None)
