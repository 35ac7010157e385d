#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
HEOS protocol messages.

Commands are sent as a single line of text of the form:

    heos://<group>/<name>?<key>=<value>&<key>=<value>

Devices answer with a JSON envelope on the same connection:

    {"heos": {"command": "<group>/<name>", "result": "success", "message": "<key>=<value>&..."},
     "payload": ..., "options": ...}

Device-initiated events use the same envelope with a command of "event/<event_type>". The
bare "heos://<group>/<name>?<query>" form is also accepted for responses and events.

The protocol has no correlation ID; a response is identified only by its command key
("<group>/<name>").
"""

from __future__ import annotations

import json
import re
from urllib.parse import unquote

from .internal_types import *
from .constants import HEOS_URL_SCHEME, EVENT_GROUP, COMMAND_UNDER_PROCESS
from .exceptions import ProtocolError

_int_re = re.compile(r'^-?[0-9]+$')

def encode_message_value(value: Any) -> str:
    """Encodes a command parameter value. The device requires '%', '&' and '=' to be
       percent-encoded; all other characters are sent verbatim."""
    if isinstance(value, bool):
        text = 'on' if value else 'off'
    else:
        text = str(value)
    return text.replace('%', '%25').replace('&', '%26').replace('=', '%3D')

def encode_message_string(params: Optional[Mapping[str, Any]]) -> str:
    """Encodes command parameters as "key=value&key=value". Parameters whose value is None are omitted."""
    if params is None:
        return ''
    return '&'.join(f"{k}={encode_message_value(v)}" for k, v in params.items() if v is not None)

def _decode_value(text: str) -> MessageValue:
    value = unquote(text)
    if _int_re.match(value) and str(int(value)) == value:
        return int(value)
    return value

def parse_message_string(message: Optional[str]) -> Dict[str, MessageValue]:
    """Parses a HEOS message string such as "pid=1&state=play" into {"pid": 1, "state": "play"}.

    Values that are canonical decimal integers are converted to int. A token without '='
    (e.g., "command under process") maps to None.
    """
    result: Dict[str, MessageValue] = {}
    if message is None or message == '':
        return result
    for part in message.split('&'):
        if part == '':
            continue
        if '=' in part:
            key, value = part.split('=', 1)
            result[unquote(key)] = _decode_value(value)
        else:
            result[unquote(part)] = None
    return result

def split_command_key(command_key: str) -> Tuple[str, str]:
    """Splits "group/name" into (group, name)."""
    group, sep, name = command_key.partition('/')
    if sep == '' or group == '' or name == '':
        raise ProtocolError(f"Invalid HEOS command: '{command_key}'")
    return (group, name)

class HeosCommand:
    """A command to send to a HEOS device"""
    group: str
    name: str
    params: Dict[str, Any]

    def __init__(self, group: str, name: str, params: Optional[Mapping[str, Any]]=None):
        if group == '' or name == '' or '/' in group or '?' in name:
            raise ValueError(f"Invalid HEOS command group/name: '{group}/{name}'")
        self.group = group
        self.name = name
        self.params = {} if params is None else dict(params)

    @property
    def command_key(self) -> str:
        """The "group/name" key used to match the response to this command"""
        return f"{self.group}/{self.name}"

    @property
    def text(self) -> str:
        """The command line as sent to the device, without the frame delimiter"""
        result = f"{HEOS_URL_SCHEME}{self.command_key}"
        message = encode_message_string(self.params)
        if message != '':
            result += f"?{message}"
        return result

    def __str__(self) -> str:
        return f"HeosCommand({self.text})"

    def __repr__(self) -> str:
        return str(self)

class HeosMessage(Mapping[str, MessageValue]):
    """A message received from a HEOS device: either a command response or an event.

    The message is a read-only mapping over its decoded message parameters; e.g., for a message
    of "pid=1&state=play", message["state"] == "play".
    """
    frame: str
    """The raw frame text the message was parsed from"""

    command_key: str
    """The "group/name" of the message"""

    result: Optional[str]
    """The "result" field of the envelope ("success" or "fail"), or None if absent"""

    message: str
    """The undecoded message string"""

    payload: Jsonable
    """The "payload" of the envelope, or None"""

    options: Jsonable
    """The "options" of the envelope, or None"""

    _params: Dict[str, MessageValue]

    def __init__(
            self,
            command_key: str,
            result: Optional[str]=None,
            message: Optional[str]=None,
            payload: Jsonable=None,
            options: Jsonable=None,
            frame: Optional[str]=None,
          ):
        split_command_key(command_key)
        self.command_key = command_key
        self.result = result
        self.message = '' if message is None else message
        self.payload = payload
        self.options = options
        self._params = parse_message_string(self.message)
        self.frame = command_key if frame is None else frame

    @property
    def group(self) -> str:
        return split_command_key(self.command_key)[0]

    @property
    def name(self) -> str:
        return split_command_key(self.command_key)[1]

    @property
    def params(self) -> Dict[str, MessageValue]:
        """A copy of the decoded message parameters"""
        return dict(self._params)

    def __getitem__(self, key: str) -> MessageValue:
        return self._params[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._params)

    def __len__(self) -> int:
        return len(self._params)

    def to_jsonable(self) -> JsonableDict:
        """Returns the message in the device's JSON envelope form"""
        heos: JsonableDict = { "command": self.command_key }
        if self.result is not None:
            heos["result"] = self.result
        heos["message"] = self.message
        result: JsonableDict = { "heos": heos }
        if self.payload is not None:
            result["payload"] = self.payload
        if self.options is not None:
            result["options"] = self.options
        return result

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.command_key}: {self.message!r})"

    def __repr__(self) -> str:
        return str(self)

class HeosResponse(HeosMessage):
    """A response to a HeosCommand"""

    @property
    def is_error(self) -> bool:
        """True iff the device reported that the command failed"""
        return self.result is not None and self.result.lower() == 'fail'

    @property
    def is_under_process(self) -> bool:
        """True iff this is an interim response; the real response follows later"""
        return self.message.startswith(COMMAND_UNDER_PROCESS)

    @property
    def error_id(self) -> Optional[int]:
        """The HEOS error ID ("eid") of a failure response"""
        eid = self._params.get('eid')
        return eid if isinstance(eid, int) else None

    @property
    def error_text(self) -> Optional[str]:
        """The error text of a failure response"""
        text = self._params.get('text')
        return None if text is None else str(text)

class HeosEvent(HeosMessage):
    """An event pushed by a HEOS device, e.g. event/player_state_changed"""

    @property
    def event_type(self) -> str:
        """The event name, e.g. "player_state_changed" """
        return self.name

def parse_message(frame: str) -> HeosMessage:
    """Parses one frame received from a device.

    Returns a HeosEvent if the frame's command group is "event", otherwise a HeosResponse.
    Raises ProtocolError if the frame cannot be parsed.
    """
    text = frame.strip()
    command_key: Optional[str] = None
    result: Optional[str] = None
    message: Optional[str] = None
    payload: Jsonable = None
    options: Jsonable = None
    if text.startswith('{'):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Invalid JSON in message: {frame!r}") from e
        heos = data.get('heos') if isinstance(data, dict) else None
        if not isinstance(heos, dict) or not isinstance(heos.get('command'), str):
            raise ProtocolError(f"Message has no heos.command field: {frame!r}")
        command_key = heos['command']
        if heos.get('result') is not None:
            result = str(heos['result'])
        if heos.get('message') is not None:
            message = str(heos['message'])
        payload = data.get('payload')
        options = data.get('options')
    elif text.startswith(HEOS_URL_SCHEME):
        command_key, _, message = text[len(HEOS_URL_SCHEME):].partition('?')
    else:
        raise ProtocolError(f"Unrecognized message format: {frame!r}")

    assert command_key is not None
    if command_key.startswith(HEOS_URL_SCHEME):
        command_key = command_key[len(HEOS_URL_SCHEME):]
    group, _ = split_command_key(command_key)
    cls: Type[HeosMessage] = HeosEvent if group == EVENT_GROUP else HeosResponse
    return cls(command_key, result=result, message=message, payload=payload, options=options, frame=frame)
