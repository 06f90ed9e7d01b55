# enrollbot/replies.py

import base64
from dataclasses import dataclass
from typing import Any, Dict, Union


@dataclass
class FileReply:
    filename: str
    mime_type: str
    data: bytes
    caption: str = ""


Reply = Union[str, FileReply]


def reply_to_payload(reply: Reply) -> Dict[str, Any]:
    """JSON-safe form of a reply, shared by the HTTP endpoint and the queue gateway."""
    if isinstance(reply, FileReply):
        return {
            "type": "file",
            "filename": reply.filename,
            "mime_type": reply.mime_type,
            "caption": reply.caption,
            "data_base64": base64.b64encode(reply.data).decode("ascii"),
        }
    return {"type": "text", "text": str(reply)}
