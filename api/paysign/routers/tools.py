from fastapi import APIRouter

from ..errors import ValidationError
from ..markup import validate_field_markup
from ..schemas import MarkupCheck

router = APIRouter()


@router.post("/validate-html")
def validate_html(payload: MarkupCheck):
    if not payload.html:
        raise ValidationError("html is required", valid=False)
    return validate_field_markup(payload.html, payload.recipient_count)
