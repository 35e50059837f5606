"""
Form builder domain logic: templates, submission validation, analytics and export.
"""

import csv
import io
import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import ValidationFailed
from .schema import parse_timestamp, utcnow
from .validation import ValidationResult, validate_email, validate_text, validate_url

FIELD_TYPES = ('text', 'number', 'email', 'url', 'textarea')
EXPORT_FORMATS = ('json', 'csv')


@dataclass
class FormField:
    id: str
    label: str
    type: str = 'text'
    value: str = ''
    required: bool = False
    max_length: int = 255
    placeholder: str = ''
    section: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FormField':
        return cls(
            id=data.get('id') or f"field_{uuid.uuid4().hex[:8]}",
            label=data.get('label', ''),
            type=data.get('type', 'text'),
            value=data.get('value', ''),
            required=bool(data.get('required', False)),
            max_length=int(data.get('max_length', data.get('maxLength', 255))),
            placeholder=data.get('placeholder', ''),
            section=data.get('section', ''),
        )


@dataclass
class FormTemplate:
    id: str
    name: str
    description: str
    fields: List[FormField]
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FormTemplate':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            description=data.get('description', ''),
            fields=[FormField.from_dict(f) for f in data.get('fields', [])],
            created_at=parse_timestamp(data.get('created_at')) or utcnow(),
        )


@dataclass
class FormSubmission:
    id: str
    form_id: str
    submitted_data: Dict[str, Any]
    submitted_at: datetime = field(default_factory=utcnow)
    submitted_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['submitted_at'] = self.submitted_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FormSubmission':
        return cls(
            id=data['id'],
            form_id=data['form_id'],
            submitted_data=dict(data.get('submitted_data') or {}),
            submitted_at=parse_timestamp(data.get('submitted_at')) or utcnow(),
            submitted_by=data.get('submitted_by'),
        )


def build_form_template(name: str, description: str, fields: List[Any],
                        form_id: Optional[str] = None) -> FormTemplate:
    """Build a template from FormField objects or plain dicts."""
    errors = []
    if not name or not name.strip():
        errors.append('Form name is required')
    if not fields:
        errors.append('At least one field is required')

    parsed = [f if isinstance(f, FormField) else FormField.from_dict(f) for f in fields or []]
    for form_field in parsed:
        if form_field.type not in FIELD_TYPES:
            errors.append(f"Field '{form_field.id}' has unsupported type: {form_field.type}")
        if not form_field.label.strip():
            errors.append(f"Field '{form_field.id}' needs a label")

    if errors:
        raise ValidationFailed(errors)

    return FormTemplate(
        id=form_id or f"form_{uuid.uuid4().hex[:12]}",
        name=name.strip(),
        description=(description or '').strip(),
        fields=parsed,
    )


def validate_field_value(form_field: FormField, value: Any) -> ValidationResult:
    """Apply one field's type rules to a submitted value."""
    blank = value is None or str(value).strip() == ''
    if blank:
        if form_field.required:
            return ValidationResult(False, [f'{form_field.label} is required'])
        return ValidationResult(True, [], '')

    if form_field.type == 'number':
        try:
            return ValidationResult(True, [], float(value))
        except (TypeError, ValueError):
            return ValidationResult(False, [f'{form_field.label} must be a number'])

    if form_field.type == 'email':
        result = validate_email(value)
    elif form_field.type == 'url':
        result = validate_url(value)
    else:
        result = validate_text(str(value), max_length=form_field.max_length)

    if not result.valid:
        return ValidationResult(False, [f'{form_field.label}: {e}' for e in result.errors])
    return result


def validate_submission(template: FormTemplate, data: Dict[str, Any]) -> ValidationResult:
    """Validate submitted data against the template; sanitized holds the cleaned values."""
    errors: List[str] = []
    cleaned: Dict[str, Any] = {}

    for form_field in template.fields:
        result = validate_field_value(form_field, data.get(form_field.id))
        if result.valid:
            cleaned[form_field.id] = result.sanitized
        else:
            errors.extend(result.errors)

    return ValidationResult(not errors, errors, cleaned)


def compute_form_analytics(form_id: str, submissions: List[FormSubmission]) -> Dict[str, Any]:
    """Submission totals, per-field completion rates (percent) and submissions per day."""
    analytics = {
        "form_id": form_id,
        "total_submissions": len(submissions),
        "field_completion_rates": {},
        "submissions_by_date": {},
    }
    if not submissions:
        return analytics

    field_counts: Dict[str, int] = {}
    for submission in submissions:
        for name, value in submission.submitted_data.items():
            field_counts.setdefault(name, 0)
            if value is not None and str(value).strip() != '':
                field_counts[name] += 1

        day = submission.submitted_at.date().isoformat()
        analytics["submissions_by_date"][day] = analytics["submissions_by_date"].get(day, 0) + 1

    for name, count in field_counts.items():
        analytics["field_completion_rates"][name] = count / len(submissions) * 100

    return analytics


def export_submissions(submissions: List[FormSubmission], fmt: str = 'json') -> str:
    """Serialize submissions as pretty JSON or as CSV with one column per field."""
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unknown export format: {fmt}. Must be one of: {list(EXPORT_FORMATS)}")

    if fmt == 'json':
        return json.dumps([s.to_dict() for s in submissions], indent=2)

    if not submissions:
        return ''

    field_names: List[str] = []
    for submission in submissions:
        for name in submission.submitted_data:
            if name not in field_names:
                field_names.append(name)

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator='\n')
    writer.writerow(['Submission ID', 'Submitted At', 'Submitted By'] + field_names)
    for submission in submissions:
        writer.writerow(
            [submission.id, submission.submitted_at.isoformat(), submission.submitted_by or 'Anonymous']
            + [submission.submitted_data.get(name, '') for name in field_names]
        )
    return buffer.getvalue().rstrip('\n')
