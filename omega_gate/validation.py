"""Header, body and scope validation for gate calls."""

import datetime
import hmac
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .allowlist import ToolEntry, get_tool_entry

HEADER_KEY = "x-omega-key"
HEADER_AGENT = "x-omega-agent"
HEADER_SCOPE = "x-omega-scope"
HEADER_NONCE = "x-omega-nonce"
HEADER_TIMESTAMP = "x-omega-timestamp"

REQUIRED_HEADERS = (HEADER_KEY, HEADER_AGENT, HEADER_SCOPE, HEADER_NONCE, HEADER_TIMESTAMP)

_AGENT_RE = re.compile(r"^[A-Za-z0-9_.:\-]{1,64}$")
_NONCE_RE = re.compile(r"^[A-Za-z0-9_\-]{8,128}$")
_SCOPE_RE = re.compile(r"^[a-z]+:[a-z_]+$")


class GateError(Exception):
    """A call rejected before execution. ``code`` is stable, ``message`` is for humans."""

    def __init__(self, http_status: int, code: str, message: str):
        super().__init__(message)
        self.http_status = http_status
        self.code = code
        self.message = message


@dataclass(frozen=True)
class GateHeaders:
    agent: str
    scopes: FrozenSet[str]
    nonce: str
    timestamp: float

    @property
    def scope(self) -> str:
        return " ".join(sorted(self.scopes))


class GateRequest(BaseModel):
    call_id: str = Field(min_length=1, max_length=128)
    tool: str = Field(min_length=1, max_length=128)
    intent: str = Field(min_length=1, max_length=4000)
    inputs: Dict[str, Any]

    @field_validator("call_id", "tool", "intent", mode="before")
    def _strip(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


def parse_timestamp(raw: str) -> float:
    """Epoch seconds, epoch milliseconds or ISO-8601, returned as epoch seconds."""
    raw = raw.strip()
    if re.fullmatch(r"\d+(\.\d+)?", raw):
        value = float(raw)
        # anything past year ~2286 in seconds is taken as milliseconds
        return value / 1000.0 if value > 1e10 else value
    try:
        parsed = datetime.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise GateError(400, "malformed_header", "timestamp is not epoch or ISO-8601")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.timestamp()


def parse_scopes(raw: str) -> FrozenSet[str]:
    scopes = frozenset(s for s in re.split(r"[\s,]+", raw.strip()) if s)
    if not scopes or any(not _SCOPE_RE.match(s) for s in scopes):
        raise GateError(400, "malformed_header", "scope must be a list of namespace:name values")
    return scopes


def parse_gate_headers(
    headers: Mapping[str, Optional[str]],
    api_key: str,
    *,
    window_seconds: int = 300,
    now: Optional[float] = None,
) -> GateHeaders:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    missing = [h for h in REQUIRED_HEADERS if not (lowered.get(h) or "").strip()]
    if missing:
        raise GateError(400, "missing_header", "missing headers: %s" % ", ".join(missing))

    if not api_key or not hmac.compare_digest(lowered[HEADER_KEY].encode(), api_key.encode()):
        raise GateError(401, "bad_credential", "invalid gate credential")

    agent = lowered[HEADER_AGENT].strip()
    if not _AGENT_RE.match(agent):
        raise GateError(400, "malformed_header", "malformed agent identity")

    scopes = parse_scopes(lowered[HEADER_SCOPE])

    nonce = lowered[HEADER_NONCE].strip()
    if not _NONCE_RE.match(nonce):
        raise GateError(400, "malformed_header", "nonce must be 8-128 url-safe characters")

    ts = parse_timestamp(lowered[HEADER_TIMESTAMP])
    current = time.time() if now is None else now
    if abs(current - ts) > window_seconds:
        raise GateError(400, "stale_timestamp", "timestamp outside the %ds window" % window_seconds)

    return GateHeaders(agent=agent, scopes=scopes, nonce=nonce, timestamp=ts)


def validate_gate_request(body: Any) -> GateRequest:
    if not isinstance(body, dict):
        raise GateError(400, "malformed_body", "request body must be a JSON object")
    try:
        return GateRequest.model_validate(body)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "body"
        raise GateError(400, "malformed_body", "%s: %s" % (field, first.get("msg", "invalid")))


def authorize_scope(tool: str, scopes: FrozenSet[str]) -> ToolEntry:
    entry = get_tool_entry(tool)
    if entry is None:
        raise GateError(403, "unknown_tool", "tool not in allowlist: %s" % tool)
    missing = entry.scopes - scopes
    if missing:
        raise GateError(403, "insufficient_scope", "tool %s requires scopes %s" % (tool, ", ".join(sorted(missing))))
    return entry
