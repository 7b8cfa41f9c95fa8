"""共通依存関数: テナント認証"""
from typing import Optional
from fastapi import Request, HTTPException, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.redis import get_redis
from app.core.session import get_session, session_tenant_id
from app.models.tenant import Tenant


async def get_current_tenant(
    request: Request,
    db: Session = Depends(get_db),
    r=Depends(get_redis),
) -> Optional[Tenant]:
    """Cookie → Redis → DB でテナント取得。未ログインならNone"""
    session_id = request.cookies.get("session_id")
    if not session_id:
        return None

    tenant_id = session_tenant_id(await get_session(r, session_id))
    if not tenant_id:
        return None

    return db.query(Tenant).filter(Tenant.id == tenant_id, Tenant.is_active == True).first()


async def require_tenant(
    tenant: Optional[Tenant] = Depends(get_current_tenant),
) -> Tenant:
    """ログイン必須。未ログインなら401"""
    if tenant is None:
        raise HTTPException(status_code=401, detail="ログインが必要です")
    return tenant
