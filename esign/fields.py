
from datetime import datetime
from typing import List, Optional, Sequence
from pydantic import BaseModel

from .models import FieldType

INVALID_POSITION = "INVALID_POSITION"
OVERLAP = "OVERLAP"
REQUIRED_EMPTY = "REQUIRED_EMPTY"
MISSING_FIELD = "MISSING_FIELD"

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d-%m-%Y", "%d/%m/%Y", "%B %d, %Y", "%b %d, %Y")
# float slack for normalized coordinates that add up to exactly 1.0
EPSILON = 1e-9


class FieldError(BaseModel):
    field_id: Optional[int] = None
    message: str
    type: str


class ValidationResult(BaseModel):
    valid: bool
    errors: List[FieldError]


def overlaps(a, b) -> bool:
    # edges that touch count as overlapping
    if a.page != b.page:
        return False
    return not (
        a.x + a.width < b.x
        or b.x + b.width < a.x
        or a.y + a.height < b.y
        or b.y + b.height < a.y
    )

def is_date(value: str) -> bool:
    text = value.strip()
    try:
        datetime.fromisoformat(text)
        return True
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            datetime.strptime(text, fmt)
            return True
        except ValueError:
            continue
    return False

def _position_errors(field, page_width: float, page_height: float) -> List[FieldError]:
    errors = []
    if field.x < 0 or field.y < 0:
        errors.append(FieldError(field_id=field.id, message="Field position cannot be negative", type=INVALID_POSITION))
    if field.x + field.width > page_width + EPSILON or field.y + field.height > page_height + EPSILON:
        errors.append(FieldError(field_id=field.id, message="Field extends beyond page boundaries", type=INVALID_POSITION))
    return errors

def _value_errors(field) -> List[FieldError]:
    if not field.required:
        return []
    value = field.value
    kind = FieldType(field.type)
    if kind == FieldType.TEXT:
        ok = bool(value and value.strip())
        message = "Text is required"
    elif kind == FieldType.CHECKBOX:
        ok = value in ("true", "false")
        message = "Checkbox must be checked"
    elif kind == FieldType.DATE:
        if not value:
            return [FieldError(field_id=field.id, message="Date is required", type=REQUIRED_EMPTY)]
        ok = is_date(value)
        message = "Invalid date format"
    else:
        ok = bool(value)
        message = f"{kind.value.capitalize()} is required"
    if ok:
        return []
    return [FieldError(field_id=field.id, message=message, type=REQUIRED_EMPTY)]

def _missing_signature_errors(fields: Sequence) -> List[FieldError]:
    types_by_signer = {}
    for field in fields:
        types_by_signer.setdefault(field.signer_id, set()).add(FieldType(field.type))
    return [
        FieldError(message=f"Signer {signer_id} requires at least one signature field", type=MISSING_FIELD)
        for signer_id, types in types_by_signer.items()
        if FieldType.SIGNATURE not in types
    ]

def validate(fields: Sequence, page_width: float = 1.0, page_height: float = 1.0) -> ValidationResult:
    """
    Check field geometry and completeness, collecting every problem.

    ``fields`` are any objects exposing id, signer_id, type, page, x, y,
    width, height, required and value (stored ``DocumentField`` rows or
    ``FieldPlacement`` requests).
    """
    fields = list(fields)
    errors: List[FieldError] = []
    for index, field in enumerate(fields):
        errors.extend(_position_errors(field, page_width, page_height))
        for other in fields[index + 1:]:
            if overlaps(field, other):
                errors.append(FieldError(field_id=field.id, message=f"Field overlaps with field {other.id}", type=OVERLAP))
        errors.extend(_value_errors(field))
    errors.extend(_missing_signature_errors(fields))
    return ValidationResult(valid=not errors, errors=errors)
