"""
Value validation and sanitization.

Pure functions: each returns a ValidationResult with descriptive error strings
instead of raising, so callers can aggregate and display them next to the
offending field. Sanitization is idempotent (sanitizing a sanitized value is a
no-op), which lets the backend re-sanitize values the client already cleaned.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from .config import JSON_MAX_BYTES, TEXT_MAX_LENGTH
from .errors import ValidationFailed

SCRIPT_TAG_RE = re.compile(r'<script[^>]*>.*?</script>', re.IGNORECASE | re.DOTALL)
JAVASCRIPT_URL_RE = re.compile(r'javascript:', re.IGNORECASE)
EVENT_HANDLER_RE = re.compile(r'\bon\w+\s*=', re.IGNORECASE)
EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

HTML_ESCAPES = {
    '<': '&lt;',
    '>': '&gt;',
    '"': '&quot;',
    "'": '&#x27;',
}

ALLOWED_URL_SCHEMES = ('http', 'https')

PROJECT_CATEGORIES = ['Residential', 'Commercial', 'Hospitality', 'Office', 'Retail']

KINDS = ('text', 'email', 'url', 'json')


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    sanitized: Any = None

    def raise_for_errors(self):
        """Raise ValidationFailed when the value was rejected."""
        if not self.valid:
            raise ValidationFailed(self.errors)
        return self.sanitized


def _strip_dangerous(value: str) -> str:
    # Removing one match can splice a new one together ("javajavascript:script:"),
    # so repeat until nothing changes.
    previous = None
    while previous != value:
        previous = value
        value = SCRIPT_TAG_RE.sub('', value)
        value = JAVASCRIPT_URL_RE.sub('', value)
        value = EVENT_HANDLER_RE.sub('', value)
    return value


def sanitize_text(value: str) -> str:
    """Strip script tags, javascript: URLs and inline handlers, then HTML-escape."""
    sanitized = _strip_dangerous(value).strip()
    return ''.join(HTML_ESCAPES.get(ch, ch) for ch in sanitized)


def visible_length(value: str) -> int:
    """Length with each HTML escape counted as the one character it stands for."""
    for ch, escaped in HTML_ESCAPES.items():
        value = value.replace(escaped, ch)
    return len(value)


def validate_text(value: Any, max_length: int = TEXT_MAX_LENGTH, required: bool = True) -> ValidationResult:
    """
    Text validation and sanitization.

    The length limit applies to the sanitized text as a reader sees it, so a
    value that passes here passes again once escaped. Required text that is
    nothing but unsafe markup is rejected.
    """
    if not isinstance(value, str):
        return ValidationResult(False, ['Value must be a string'])

    if not value.strip():
        if required:
            return ValidationResult(False, ['Value must be a non-empty string'])
        return ValidationResult(True, [], '')

    sanitized = sanitize_text(value)
    if not sanitized and required:
        return ValidationResult(False, ['Value is empty after removing unsafe content'])

    errors = []
    if visible_length(sanitized) > max_length:
        errors.append(f'Text must be {max_length} characters or less')

    return ValidationResult(not errors, errors, sanitized)


def validate_email(value: Any, required: bool = True) -> ValidationResult:
    if not isinstance(value, str) or not value.strip():
        if not required and (value is None or (isinstance(value, str) and not value.strip())):
            return ValidationResult(True, [], '')
        return ValidationResult(False, ['Invalid email format'])

    email = value.strip()
    if not EMAIL_RE.match(email):
        return ValidationResult(False, ['Invalid email format'])

    return ValidationResult(True, [], email.lower())


def validate_url(value: Any, required: bool = True) -> ValidationResult:
    """Absolute http(s) URLs only."""
    if not isinstance(value, str) or not value.strip():
        if not required and (value is None or (isinstance(value, str) and not value.strip())):
            return ValidationResult(True, [], '')
        return ValidationResult(False, ['Invalid URL format'])

    url = value.strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        return ValidationResult(False, ['Invalid URL format'])

    if not parts.scheme or not parts.netloc:
        return ValidationResult(False, ['Invalid URL format'])

    if parts.scheme.lower() not in ALLOWED_URL_SCHEMES:
        return ValidationResult(False, ['Only HTTP and HTTPS URLs are allowed'])

    return ValidationResult(True, [], url)


def validate_json(value: Any, max_bytes: int = JSON_MAX_BYTES) -> ValidationResult:
    """Structured payloads must serialize to at most max_bytes of UTF-8 JSON."""
    try:
        encoded = json.dumps(value).encode('utf-8')
    except (TypeError, ValueError):
        return ValidationResult(False, ['Invalid JSON data'])

    if len(encoded) > max_bytes:
        return ValidationResult(False, [f'JSON data too large. Maximum {max_bytes} bytes allowed'])

    return ValidationResult(True, [], value)


def validate(value: Any, kind: str, constraints: Optional[Dict[str, Any]] = None) -> ValidationResult:
    """Dispatch to the validator for kind (text, email, url, json)."""
    constraints = constraints or {}
    required = constraints.get('required', True)

    if kind == 'text':
        return validate_text(value, constraints.get('max_length', TEXT_MAX_LENGTH), required)
    elif kind == 'email':
        return validate_email(value, required)
    elif kind == 'url':
        return validate_url(value, required)
    elif kind == 'json':
        return validate_json(value, constraints.get('max_bytes', JSON_MAX_BYTES))
    else:
        raise ValueError(f"Unknown validation kind: {kind}. Must be one of: {list(KINDS)}")


def sanitize(value: Any, kind: str) -> Any:
    """Sanitized form of value for kind; invalid values are returned unchanged."""
    result = validate(value, kind, {'required': False, 'max_length': float('inf')})
    return result.sanitized if result.valid else value


def validate_element_value(value: Any, required: bool = True) -> ValidationResult:
    """Strings are validated as text, anything else as a JSON payload."""
    if isinstance(value, str):
        return validate_text(value, required=required)
    return validate_json(value)


def validate_project_data(project: Dict[str, Any]) -> ValidationResult:
    errors = []
    title = project.get('title') or ''

    if not str(title).strip():
        errors.append('Project title is required')
    elif len(title) > 200:
        errors.append('Project title must be 200 characters or less')

    description = project.get('description')
    if description and len(description) > 5000:
        errors.append('Project description must be 5000 characters or less')

    category = project.get('category')
    if category and category not in PROJECT_CATEGORIES:
        errors.append('Invalid project category')

    return ValidationResult(not errors, errors, project)


def validate_education_data(education: Dict[str, Any]) -> ValidationResult:
    errors = []

    for name, label in (('institution', 'Institution name'), ('degree', 'Degree'), ('period', 'Period')):
        if not str(education.get(name) or '').strip():
            errors.append(f'{label} is required')

    description = education.get('description')
    if description and len(description) > 2000:
        errors.append('Description must be 2000 characters or less')

    return ValidationResult(not errors, errors, education)


def validate_image_data(image: Dict[str, Any]) -> ValidationResult:
    errors = []

    if not image.get('url'):
        errors.append('Image URL is required')
    else:
        errors.extend(validate_url(image['url']).errors)

    if not str(image.get('name') or '').strip():
        errors.append('Image name is required')

    description = image.get('description')
    if description and len(description) > 1000:
        errors.append('Image description must be 1000 characters or less')

    return ValidationResult(not errors, errors, image)
