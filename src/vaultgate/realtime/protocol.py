"""
Real-time channel wire protocol.

Every frame is a JSON object with a `type` field.

Client -> server:
    command       {targetPrincipal, action, data?, id?}
    heartbeat     {version?}
    kill-switch   {enable, id?}

Server -> client:
    presence-update     {entries: [...]}
    kill-switch-update  {enabled}
    command-ack         {ok, action, target, reason?, message?, id?}
    command             {from, action, data}     forwarded custom command
    error               {reason, message}
"""

import json
from typing import Any, Dict, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..errors import InvalidInput, VaultGateError


# Outbound event types
PRESENCE_UPDATE = "presence-update"
KILL_SWITCH_UPDATE = "kill-switch-update"
COMMAND_ACK = "command-ack"
COMMAND = "command"
ERROR = "error"

# Built-in actions; anything else is forwarded as a custom command
KICK = "kick"
BAN = "ban"
TIMEOUT = "timeout"
BUILTIN_ACTIONS = frozenset({KICK, BAN, TIMEOUT})


class CommandMessage(BaseModel):
    """Privileged command naming a target principal and an action."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["command"]
    target_principal: str = Field(alias="targetPrincipal", min_length=1)
    action: str = Field(min_length=1)
    data: Any = None
    id: Optional[Union[str, int]] = None

    @property
    def is_custom(self) -> bool:
        return self.action not in BUILTIN_ACTIONS

    def timeout_seconds(self) -> Any:
        """Seconds for a timeout action: `data` itself or `data["seconds"]`."""
        if isinstance(self.data, dict):
            return self.data.get("seconds")
        return self.data


class HeartbeatMessage(BaseModel):
    type: Literal["heartbeat"]
    version: Optional[str] = None


class KillSwitchMessage(BaseModel):
    type: Literal["kill-switch"]
    enable: bool
    id: Optional[Union[str, int]] = None


InboundMessage = Union[CommandMessage, HeartbeatMessage, KillSwitchMessage]

_inbound_adapter = TypeAdapter(InboundMessage)


def parse_message(raw: Union[str, bytes]) -> InboundMessage:
    """
    Parse one inbound frame.

    Args:
        raw: JSON text (or UTF-8 bytes)

    Returns:
        Typed message

    Raises:
        InvalidInput: If the frame is not JSON, has an unknown type, or is
            missing required fields
    """
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        raise InvalidInput("InvalidMessage", "Invalid JSON format")

    if not isinstance(msg, dict):
        raise InvalidInput("InvalidMessage", "Message must be a JSON object")

    msg_type = msg.get("type")
    if msg_type not in ("command", "heartbeat", "kill-switch"):
        raise InvalidInput("InvalidMessage", f"Unknown message type: {msg_type}")

    try:
        return _inbound_adapter.validate_python(msg)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise InvalidInput("InvalidMessage", f"Malformed {msg_type} message: {fields}")


def presence_update(entries: Iterable) -> Dict[str, Any]:
    return {"type": PRESENCE_UPDATE, "entries": [entry.to_dict() for entry in entries]}


def kill_switch_update(enabled: bool) -> Dict[str, Any]:
    return {"type": KILL_SWITCH_UPDATE, "enabled": bool(enabled)}


def command_ack(
    action: str,
    target: Optional[str],
    error: Optional[VaultGateError] = None,
    request_id: Optional[Union[str, int]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Build an acknowledgement; a failure always carries reason and message."""
    ack: Dict[str, Any] = {
        "type": COMMAND_ACK,
        "ok": error is None,
        "action": action,
        "target": target,
    }
    if error is not None:
        ack["reason"] = error.code
        ack["message"] = error.message
    if request_id is not None:
        ack["id"] = request_id
    ack.update(extra)
    return ack


def forwarded_command(sender: str, action: str, data: Any) -> Dict[str, Any]:
    return {"type": COMMAND, "from": sender, "action": action, "data": data}


def error_event(error: VaultGateError) -> Dict[str, Any]:
    return {"type": ERROR, "reason": error.code, "message": error.message}


def encode(event: Dict[str, Any]) -> str:
    return json.dumps(event)
