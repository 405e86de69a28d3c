"""Request bodies accepted by the JSON API.

Each model validates and normalizes one request shape before it reaches the
circulation or catalog functions. ``parse`` turns pydantic failures into the
service's own ``ValidationError`` so callers only ever see one error type.
"""

from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError


class RequestModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra='ignore')


class BorrowRequest(RequestModel):
    book_id: int = Field(..., gt=0)
    student_name: str = Field(..., min_length=1, max_length=150)
    student_id_number: str = Field(..., min_length=1, max_length=50)
    course: Optional[str] = Field(None, max_length=100)
    year_level: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = Field(None, max_length=255)
    contact_number: Optional[str] = Field(None, max_length=30, pattern=r'^[0-9+()\- ]*$')
    email: Optional[str] = Field(None, max_length=120, pattern=r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
    borrowed_date: date
    due_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator('course', 'year_level', 'address', 'contact_number', 'email', 'notes', mode='before')
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode='after')
    def due_not_before_borrow(self):
        if self.due_date is not None and self.due_date < self.borrowed_date:
            raise ValueError('Due date must not be before borrow date')
        return self


class ExtendRequest(RequestModel):
    # upper bound is MAX_EXTENSION_DAYS, checked when extending
    days: Optional[int] = Field(None, ge=1)
    due_date: Optional[date] = None

    @model_validator(mode='after')
    def exactly_one_target(self):
        if (self.days is None) == (self.due_date is None):
            raise ValueError('Provide either a number of days or a new due date')
        return self


class BookCreate(RequestModel):
    title: str = Field(..., min_length=1, max_length=255)
    author: str = Field(..., min_length=1, max_length=255)
    isbn: str = Field(..., min_length=1, max_length=20)
    quantity: int = Field(1, ge=1, le=10000)
    category: Optional[str] = Field(None, max_length=100)
    publisher: Optional[str] = Field(None, max_length=255)
    published_year: Optional[int] = Field(None, ge=1000)
    description: Optional[str] = None
    location: Optional[str] = Field(None, max_length=100)

    @field_validator('published_year')
    @classmethod
    def not_beyond_next_year(cls, value):
        if value is not None and value > date.today().year + 1:
            raise ValueError('Published year cannot be later than next year')
        return value


class BookUpdate(BookCreate):
    quantity: int = Field(..., ge=1, le=10000)


class SettleFineRequest(RequestModel):
    payment_status: str = Field(..., pattern=r'^(paid|waived)$')
    payment_method: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = None

    @model_validator(mode='after')
    def method_required_when_paid(self):
        if self.payment_status == 'paid' and not self.payment_method:
            raise ValueError('Payment method is required when marking a fine as paid')
        return self


def _describe(error):
    location = '.'.join(str(part) for part in error['loc'])
    message = error['msg']
    if message.startswith('Value error, '):
        message = message[len('Value error, '):]
    return f'{location}: {message}' if location else message


def parse(model, payload):
    if payload is None:
        raise ValidationError('Request body must be a JSON object')
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError([_describe(err) for err in e.errors()]) from e
