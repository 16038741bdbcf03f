"""
WeChat MP Envelope Normalization

PURE CONVERSION - NO LOGIC, NO MODEL CALLS

Converts the provider's XML (or JSON) envelope into a canonical InboundEvent.
"""

import json
import xml.etree.ElementTree as ET
from typing import Dict

from pydantic import ValidationError

from .schemas import InboundEvent
from .security import MalformedPayload

# Provider element name -> InboundEvent field
FIELD_MAP = {
    "ToUserName": "to_user",
    "FromUserName": "from_user",
    "CreateTime": "create_time",
    "MsgType": "msg_type",
    "Content": "content",
    "MsgId": "msg_id",
    "MsgID": "msg_id",
    "Event": "event",
    "EventKey": "event_key",
    "PicUrl": "pic_url",
    "MediaId": "media_id",
    "Format": "format",
    "Recognition": "recognition",
    "ThumbMediaId": "thumb_media_id",
    "Location_X": "location_x",
    "Location_Y": "location_y",
    "Scale": "scale",
    "Label": "label",
    "Title": "title",
    "Description": "description",
    "Url": "url",
}

REQUIRED_FIELDS = ("ToUserName", "FromUserName", "CreateTime", "MsgType")


def _parse_xml(text: str) -> Dict[str, str]:
    # Entity declarations have no legitimate use in these envelopes.
    if "<!DOCTYPE" in text or "<!ENTITY" in text:
        raise MalformedPayload("DTDs are not allowed in envelopes")
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise MalformedPayload(f"Invalid XML: {e}")
    return {child.tag: (child.text or "").strip() for child in root}


def _parse_json(text: str) -> Dict[str, str]:
    try:
        data = json.loads(text)
    except ValueError as e:
        raise MalformedPayload(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise MalformedPayload("JSON envelope must be an object")
    return {
        str(key): (value if isinstance(value, str) else json.dumps(value))
        for key, value in data.items()
        if value is not None
    }


def parse_envelope_fields(text: str) -> Dict[str, str]:
    """
    Parse an envelope body into a flat element-name -> text mapping.

    JSON is detected by a leading '{'; anything else is treated as XML.
    """
    stripped = (text or "").strip()
    if not stripped:
        raise MalformedPayload("Empty body")
    if stripped.startswith("{"):
        return _parse_json(stripped)
    return _parse_xml(stripped)


def normalize_event(fields: Dict[str, str]) -> InboundEvent:
    """
    Convert parsed envelope fields into an InboundEvent.

    Raises:
        MalformedPayload: a required element is missing or empty
    """
    missing = [name for name in REQUIRED_FIELDS if not fields.get(name)]
    if missing:
        raise MalformedPayload(f"Missing required fields: {', '.join(missing)}")

    data = {}
    for element, field_name in FIELD_MAP.items():
        value = fields.get(element)
        if value is None or field_name in data:
            continue
        data[field_name] = value

    data["msg_type"] = data["msg_type"].lower()

    try:
        return InboundEvent(**data)
    except ValidationError as e:
        raise MalformedPayload(f"Invalid envelope: {e}")
