"""Turns provider text into {message, audio_description, action}.

Structured output is requested wherever a provider supports it, so pure JSON
is the common case. Fenced blocks, JSON trailing free text and plain prose are
accepted in that order; the last resort synthesizes a reply from raw text.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ...domain.models import ReplyAction

DEFAULT_MESSAGE = "He encontrado información. ¿Puedo ayudarte con algo más?"

_FENCED = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_decoder = json.JSONDecoder()


@dataclass
class ParsedReply:
    message: str
    audio_description: str
    action: ReplyAction
    strategy: str


def _is_candidate(value: Any) -> bool:
    return isinstance(value, dict) and ("message" in value or "action" in value)


def _try_json(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if _is_candidate(value) else None


def _embedded(text: str):
    """First decodable object carrying message/action, plus the prose before it."""
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
        except ValueError:
            value = None
        if _is_candidate(value):
            return value, text[:start].strip()
        start = text.find("{", start + 1)
    return None, ""


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _as_str(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    return str(value)


def normalize_action(raw: Any) -> ReplyAction:
    """Coerce whatever the model sent into a ReplyAction; anything unusable becomes type none."""
    if not isinstance(raw, dict) or not raw.get("type") or raw.get("type") == "none":
        return ReplyAction(type="none")
    quantity = _as_int(raw.get("quantity"))
    return ReplyAction(
        type=str(raw["type"]),
        productId=_as_str(raw.get("productId")),
        quantity=max(1, quantity) if quantity is not None else 1,
        url=_as_str(raw.get("url")),
        price_sale=_as_float(raw.get("price_sale")),
        title=_as_str(raw.get("title")),
        price_regular=_as_float(raw.get("price_regular")),
        image=_as_str(raw.get("image")),
        slug=_as_str(raw.get("slug")),
    )


def _from_payload(payload: Dict[str, Any], fallback_message: str, strategy: str) -> ParsedReply:
    message = payload.get("message")
    message = str(message).strip() if message else fallback_message or DEFAULT_MESSAGE
    audio = payload.get("audio_description")
    return ParsedReply(
        message=message,
        audio_description=str(audio).strip() if audio else message,
        action=normalize_action(payload.get("action")),
        strategy=strategy,
    )


def parse_reply(text: Optional[str]) -> ParsedReply:
    raw = (text or "").strip()
    if not raw:
        return ParsedReply(DEFAULT_MESSAGE, DEFAULT_MESSAGE, ReplyAction(type="none"), "empty")

    payload = _try_json(raw)
    if payload is not None:
        return _from_payload(payload, "", "json")

    fenced = _FENCED.search(raw)
    if fenced:
        payload = _try_json(fenced.group(1).strip())
        if payload is not None:
            before = raw[: fenced.start()].strip()
            return _from_payload(payload, before, "fenced")

    payload, before = _embedded(raw)
    if payload is not None:
        return _from_payload(payload, before, "embedded")

    return ParsedReply(raw, raw, ReplyAction(type="none"), "text")
