# enrollbot/parsing.py

import re
from typing import Dict, Optional, Type, TypeVar

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from enrollbot.errors import ValidationError
from enrollbot.i18n import normalize_text


class SubjectDraft(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    code: str = Field(min_length=1, max_length=32)
    semester: int = Field(ge=1)
    credits: int = Field(gt=0)
    seats: int = Field(ge=0)
    days: str = Field(min_length=1, max_length=200)
    hours: str = Field(min_length=1, max_length=200)
    career: Optional[str] = None

    @field_validator("code", "career")
    @classmethod
    def _upper_code(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class CareerDraft(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    code: str = Field(min_length=1, max_length=32)

    @field_validator("code")
    @classmethod
    def _upper_code(cls, v):
        return v.strip().upper()


DraftT = TypeVar("DraftT", bound=BaseModel)


def split_key_values(body: str, labels: Dict[str, str]) -> Dict[str, str]:
    """
    Split a free-text block like "nombre: Cálculo I codigo: MAT101 creditos: 3" into canonical keys.

    `labels` maps a normalized label to its canonical key. A value runs until the next recognized
    label or the end of the block, so values may hold spaces, newlines or colons ("08:00-10:00").
    Unknown labels stay part of the previous value. The first occurrence of a key wins.
    """
    if not body or not labels:
        return {}

    # accents/case differ between what users type and the table, so match on a normalized copy
    # of every candidate word and keep offsets into the original text
    word_re = re.compile(r"([^\W\d_]+)\s*:", re.UNICODE)
    hits = []
    for m in word_re.finditer(body):
        start = m.start(1)
        if start > 0 and (body[start - 1].isalnum() or body[start - 1] == "_"):
            continue
        canonical = labels.get(normalize_text(m.group(1)))
        if canonical:
            hits.append((canonical, m.start(), m.end()))

    values: Dict[str, str] = {}
    for i, (canonical, _, value_start) in enumerate(hits):
        value_end = hits[i + 1][1] if i + 1 < len(hits) else len(body)
        value = body[value_start:value_end].strip()
        if canonical not in values and value:
            values[canonical] = value
    return values


def parse_block(body: str, labels: Dict[str, str], model: Type[DraftT]) -> DraftT:
    """Parse + validate a key:value block into `model`; raises ValidationError("fields") listing bad fields."""
    values = split_key_values(body, labels)
    try:
        return model.model_validate(values)
    except PydanticValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise ValidationError("fields", f"Invalid or missing fields: {', '.join(fields)}", fields=fields) from e
