from __future__ import annotations

from typing import Optional

import httpx

from playerdash.logging import get_logger

logger = get_logger(__name__)


class CaptchaVerifier:
    """reCAPTCHA ``siteverify`` client.

    Without a configured secret (development, tests) any non-empty artifact
    is accepted so the escalation path stays exercisable.
    """

    def __init__(
        self,
        secret: Optional[str],
        *,
        verify_url: str = "https://www.google.com/recaptcha/api/siteverify",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.secret)

    async def verify(self, artifact: Optional[str], *, remote_ip: Optional[str] = None) -> bool:
        if not artifact:
            return False
        if not self.is_configured:
            return True
        data = {"secret": self.secret, "response": artifact}
        if remote_ip:
            data["remoteip"] = remote_ip
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.post(self.verify_url, data=data)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "captcha_verify_http_error",
                status_code=exc.response.status_code,
                error=str(exc),
            )
            return False
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("captcha_verify_failed", error_type=type(exc).__name__, error=str(exc))
            return False
        success = bool(body.get("success"))
        if not success:
            logger.info("captcha_rejected", error_codes=body.get("error-codes"))
        return success
