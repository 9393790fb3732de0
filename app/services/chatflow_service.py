import base64
from typing import Optional

import httpx

from app.logging_config import get_logger
from app.services.transport import ChatTransport, Presence, TransportError

logger = get_logger("chatflow_service")


def build_vcard(phone: str, name: Optional[str] = None) -> str:
    """vCard 3.0 for a contact card; Brazilian 10-11 digit numbers get the 55 prefix."""
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) in (10, 11):
        digits = f"55{digits}"
    display = name or f"+{digits}"
    return (
        "BEGIN:VCARD\n"
        "VERSION:3.0\n"
        f"FN:{display}\n"
        f"TEL;type=CELL;type=VOICE;waid={digits}:+{digits}\n"
        "END:VCARD"
    )


class ChatFlowTransport(ChatTransport):
    """WhatsApp delivery through the ChatFlow bridge HTTP API."""

    def __init__(
        self,
        api_url: str,
        token: str,
        instance_id: str,
        *,
        timeout_seconds: float = 30.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.instance_id = instance_id
        self.timeout_seconds = timeout_seconds
        self._http_transport = http_transport

    async def _call(self, endpoint: str, conversation_key: str, *, params: Optional[dict] = None, json: Optional[dict] = None):
        if not self.token or not self.instance_id:
            raise TransportError("ChatFlow token or instance_id not configured", conversation_key)

        base = {"token": self.token, "instance_id": self.instance_id, "jid": conversation_key}
        url = f"{self.api_url}/{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._http_transport) as client:
                if json is not None:
                    response = await client.post(url, json={**base, **json})
                else:
                    response = await client.get(url, params={**base, **(params or {})})
        except httpx.HTTPError as exc:
            logger.error(f"ChatFlow {endpoint} failed: jid={conversation_key}, error={exc}")
            raise TransportError(f"ChatFlow {endpoint} failed: {exc}", conversation_key) from exc

        logger.info(f"ChatFlow {endpoint}: status={response.status_code}, jid={conversation_key}, body={response.text[:200]}")
        if response.status_code != 200:
            raise TransportError(f"ChatFlow {endpoint} returned {response.status_code}", conversation_key)
        return response

    async def send_text(self, conversation_key: str, text: str) -> None:
        if not text:
            return
        await self._call("send-text", conversation_key, params={"msg": text})

    async def send_audio(self, conversation_key: str, audio: bytes) -> None:
        payload = {"audio_base64": base64.b64encode(audio).decode("ascii"), "ptt": True}
        await self._call("send-audio", conversation_key, json=payload)

    async def send_contact_card(self, conversation_key: str, phone: str, name: Optional[str] = None) -> None:
        await self._call("send-contact", conversation_key, json={"vcard": build_vcard(phone, name)})

    async def set_presence(self, conversation_key: str, state: Presence) -> None:
        await self._call("presence", conversation_key, params={"state": state.value})
