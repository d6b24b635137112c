from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
from typing import Optional, Protocol

import aiohttp
import qrcode

from qris_shop.errors import QrIssuanceFailed
from qris_shop.models import QrArtifact

logger = logging.getLogger(__name__)


class QrIssuer(Protocol):
    async def issue(self, amount: int) -> QrArtifact: ...


# QRIS follows the EMVCo merchant-presented layout: a flat run of
# tag(2) + length(2) + value fields, closed by a CRC in tag 63.


def format_tag(tag: str, value: str) -> str:
    return f"{tag}{len(value):02d}{value}"


def crc16_ccitt(data: str, poly: int = 0x1021, init: int = 0xFFFF) -> int:
    crc = init
    for ch in data.encode("utf-8"):
        crc ^= ch << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ poly
            else:
                crc <<= 1
            crc &= 0xFFFF
    return crc


def parse_tlv(payload: str) -> list[tuple[str, str]]:
    fields = []
    pos = 0
    while pos < len(payload):
        if pos + 4 > len(payload):
            raise ValueError(f"truncated QRIS field at offset {pos}")
        tag = payload[pos:pos + 2]
        length_raw = payload[pos + 2:pos + 4]
        if not length_raw.isdigit():
            raise ValueError(f"bad length {length_raw!r} for tag {tag}")
        length = int(length_raw)
        value = payload[pos + 4:pos + 4 + length]
        if len(value) != length:
            raise ValueError(f"truncated value for tag {tag}")
        fields.append((tag, value))
        pos += 4 + length
    return fields


def with_crc(payload: str) -> str:
    data = payload + "6304"
    return data + f"{crc16_ccitt(data):04X}"


def to_dynamic(static_payload: str, amount: int) -> str:
    """Turn a merchant's static QRIS into a single-use one for `amount`."""
    if amount <= 0:
        raise ValueError("amount must be > 0")
    fields = [(t, v) for t, v in parse_tlv(static_payload.strip()) if t not in ("54", "63")]
    if not fields or fields[0][0] != "00":
        raise ValueError("QRIS payload must start with tag 00")
    out = []
    inserted = False
    for tag, value in fields:
        if tag == "01":
            value = "12"
        if not inserted and tag > "54":
            out.append(("54", str(amount)))
            inserted = True
        out.append((tag, value))
    if not inserted:
        out.append(("54", str(amount)))
    return with_crc("".join(format_tag(t, v) for t, v in out))


def encoded_amount(payload: str) -> Optional[int]:
    try:
        fields = dict(parse_tlv(payload.strip()))
    except ValueError:
        return None
    raw = fields.get("54")
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return int(value) if value.is_integer() else None


def render_png(payload: str) -> bytes:
    img = qrcode.make(payload)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class LocalQrisIssuer:
    def __init__(self, static_payload: str):
        if not static_payload:
            raise RuntimeError("QRIS_CODE is not set")
        self.static_payload = static_payload

    async def issue(self, amount: int) -> QrArtifact:
        try:
            payload = to_dynamic(self.static_payload, amount)
        except ValueError as e:
            raise QrIssuanceFailed(f"cannot convert QRIS: {e}") from e
        return QrArtifact(image=render_png(payload), encoded_amount=encoded_amount(payload))


class QrisApiIssuer:
    """Static-to-dynamic conversion through the remote QRIS generator."""

    def __init__(self, static_payload: str, url: str, timeout: float = 15):
        if not static_payload:
            raise RuntimeError("QRIS_CODE is not set")
        self.static_payload = static_payload
        self.url = url
        self.timeout = timeout

    async def issue(self, amount: int) -> QrArtifact:
        body = {
            "qrisCode": self.static_payload,
            "nominal": str(amount),
            "feeType": "r",
            "fee": "0",
            "includeFee": False,
        }
        logger.info("requesting dynamic QRIS amount=%s", amount)
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(self.url, json=body) as resp:
                    if resp.status // 100 != 2:
                        raise QrIssuanceFailed(f"QRIS generator returned HTTP {resp.status}")
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise QrIssuanceFailed(f"QRIS generator request failed: {e!r}") from e
        return self.parse_response(data)

    @staticmethod
    def parse_response(data: object) -> QrArtifact:
        qr_code = data.get("qrCode") if isinstance(data, dict) else None
        if not isinstance(qr_code, str) or not qr_code:
            raise QrIssuanceFailed(f"no qrCode in QRIS generator response: {data!r}")
        encoded = qr_code.split(",", 1)[1] if qr_code.startswith("data:") else qr_code
        try:
            content = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise QrIssuanceFailed("qrCode is not valid base64") from e
        if content.startswith(b"000201"):
            payload = content.decode("ascii", errors="replace")
            return QrArtifact(image=render_png(payload), encoded_amount=encoded_amount(payload))
        return QrArtifact(image=content)
