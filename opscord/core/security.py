import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, status

from opscord.core.config import Settings, get_settings

JOB_SECRET_HEADER = "X-Job-Secret"


async def require_job_secret(
    settings: Settings = Depends(get_settings),
    x_job_secret: str | None = Header(default=None, alias=JOB_SECRET_HEADER),
) -> None:
    if not settings.job_queue_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="job queue secret is not configured",
        )
    if not x_job_secret:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"queue access requires {JOB_SECRET_HEADER}",
        )
    if not hmac.compare_digest(x_job_secret.encode("utf-8"), settings.job_queue_secret.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid job secret")


def verify_github_signature(*, secret: str, body: bytes, signature_header: str | None) -> bool:
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header)
