from dataclasses import asdict

from fastapi import APIRouter, Depends

from marketchat.schemas.conversation import AccountDeletedRequest
from marketchat.services.account_cleanup_service import AccountCleanupService
from marketchat.utils.dependencies import get_account_cleanup_service, require_internal_key


router = APIRouter(prefix="/internal/accounts", tags=["internal"], dependencies=[Depends(require_internal_key)])


@router.post("/deleted")
async def account_deleted(body: AccountDeletedRequest, service: AccountCleanupService = Depends(get_account_cleanup_service)):
    """Account-lifecycle hook: cascade a permanent account deletion."""
    report = await service.handle_account_deleted(body.deleted_actor_id)
    return asdict(report)
