import hmac

from fastapi import Depends, Header, HTTPException, status

from app.core.auth import Principal, PrincipalType
from app.core.config import Settings, get_settings


async def get_operator_principal(
    settings: Settings = Depends(get_settings),
    x_operator_key: str | None = Header(default=None, alias="X-Operator-Key"),
    x_operator_id: str | None = Header(default=None, alias="X-Operator-Id"),
) -> Principal:
    if not settings.operator_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="operator access is not configured",
        )
    if not x_operator_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="operator auth requires X-Operator-Key")
    if not hmac.compare_digest(x_operator_key.encode("utf-8"), settings.operator_api_key.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid operator credentials")

    subject = (x_operator_id or "").strip() or "operator"
    return Principal(principal_type=PrincipalType.OPERATOR, subject=subject)
