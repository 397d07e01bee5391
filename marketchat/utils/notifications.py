import asyncio
import logging
from typing import Dict, List, Optional

from pyfcm import FCMNotification

from marketchat.config import get_settings


logger = logging.getLogger(__name__)


class NoopPush:

    enabled = False

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> int:
        return 0


class FcmPush:

    enabled = True

    def __init__(self, service_account_file: str, project_id: str) -> None:
        self._client = FCMNotification(service_account_file=service_account_file, project_id=project_id)

    async def send_fcm(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, str]] = None) -> int:
        """Send to each token; returns how many were accepted by FCM."""
        sent = 0
        for token in tokens:
            try:
                # pyfcm is synchronous
                await asyncio.to_thread(
                    self._client.notify,
                    fcm_token=token,
                    notification_title=title,
                    notification_body=body,
                    data_payload=data or {},
                )
                sent += 1
            except Exception:
                logger.warning("FCM delivery failed for one device token", exc_info=True)
        return sent


_push = None


async def get_push():
    global _push
    if _push is not None:
        return _push
    settings = get_settings()
    if settings.FCM_SERVICE_ACCOUNT_FILE and settings.FCM_PROJECT_ID:
        _push = FcmPush(settings.FCM_SERVICE_ACCOUNT_FILE, settings.FCM_PROJECT_ID)
    else:
        _push = NoopPush()
    return _push
