"""
Form builder client: templates, live field edits, submissions and sharing.
"""

import time
from typing import Any, Callable, Dict, List, Optional

from ..core.config import SHARE_PATH, SITE_ORIGIN
from ..core.forms import (
    FormSubmission,
    FormTemplate,
    compute_form_analytics,
    export_submissions,
    validate_submission,
)
from ..core.schema import ChangeEvent, split_element_key
from ..core.links import build_share_url
from .autosave import AutosaveCoordinator
from .change_bus import ChangeBus
from .store_client import RemoteStoreClient, SaveResult
from util.logging import logger

FORM_TYPE = "form"
SUBMISSION_TYPE = "form_submission"


class FormService:
    def __init__(self, client: RemoteStoreClient, autosave: AutosaveCoordinator, change_bus: ChangeBus):
        self.client = client
        self.autosave = autosave
        self.change_bus = change_bus
        self._last_submission_ms = 0

    async def save_template(self, template: FormTemplate) -> SaveResult:
        return await self.client.set(FORM_TYPE, template.id, template.to_dict())

    async def load_template(self, form_id: str) -> Optional[FormTemplate]:
        data = await self.client.get(FORM_TYPE, form_id)
        return FormTemplate.from_dict(data) if isinstance(data, dict) else None

    def edit_field(self, form_id: str, field_id: str, value: Any):
        """Live edit of one field value, autosaved as form:<form_id>_<field_id>."""
        self.autosave.edit(FORM_TYPE, f"{form_id}_{field_id}", value)

    def _next_submission_id(self) -> str:
        ms = max(int(time.time() * 1000), self._last_submission_ms + 1)
        self._last_submission_ms = ms
        return f"submission_{ms}"

    async def submit(self, template: FormTemplate, data: Dict[str, Any]) -> FormSubmission:
        """
        Validate and store a submission.

        Raises:
            ValidationFailed: a field value breaks the template's rules
        """
        cleaned = validate_submission(template, data).raise_for_errors()
        principal = self.client.principal
        submission = FormSubmission(
            id=self._next_submission_id(),
            form_id=template.id,
            submitted_data=cleaned,
            submitted_by=principal.user_id if principal else None,
        )

        result = await self.client.set(SUBMISSION_TYPE, submission.id, submission.to_dict(), notify=False)
        result.raise_for_errors()
        logger.log_operation("form.submit", "success", {"form_id": template.id, "submission_id": submission.id})
        return submission

    async def get_submissions(self, form_id: str) -> List[FormSubmission]:
        """Submissions for one form, newest first."""
        submissions = []
        for key, value in (await self.client.list_all()).items():
            element_type, _ = split_element_key(key)
            if element_type == SUBMISSION_TYPE and isinstance(value, dict) and value.get("form_id") == form_id:
                submissions.append(FormSubmission.from_dict(value))
        return sorted(submissions, key=lambda s: s.submitted_at, reverse=True)

    async def get_analytics(self, form_id: str) -> Dict[str, Any]:
        return compute_form_analytics(form_id, await self.get_submissions(form_id))

    async def export(self, form_id: str, fmt: str = "json") -> str:
        return export_submissions(await self.get_submissions(form_id), fmt)

    async def create_share_link(self, form_id: str, expires_in_days: Optional[int] = None,
                                permissions: Optional[List[str]] = None,
                                password: Optional[str] = None) -> str:
        """Create a share link for a form and return its URL."""
        share = await self.client.create_share_link(FORM_TYPE, form_id, expires_in_days, permissions, password)
        return share.get("url") or build_share_url(SITE_ORIGIN, SHARE_PATH, share["share_id"])

    def subscribe(self, form_id: str, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        """Live changes to one form (its template and its field values)."""
        field_prefix = f"{form_id}_"

        def on_change(event: ChangeEvent):
            if event.element_type != FORM_TYPE:
                return
            if event.element_id == form_id or event.element_id.startswith(field_prefix):
                callback(event)

        return self.change_bus.subscribe(on_change)
