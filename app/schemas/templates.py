from pydantic import BaseModel, Field

from app.schemas.sources import SourceOut
from app.services.rule_templates import RuleTemplate, RuleTemplatePreview


class RuleTemplateDraftOut(BaseModel):
    snapshot_id: str
    template: RuleTemplate
    preview: RuleTemplatePreview


class RuleTemplatePreviewRequest(BaseModel):
    template: RuleTemplate


class RuleTemplateApplyRequest(BaseModel):
    template: RuleTemplate
    verify_link_id: str | None = Field(default=None, min_length=1)


class VerificationOut(BaseModel):
    run_id: str
    status: str
    snapshot_id: str | None = None
    unchanged: bool = False
    error: str | None = None


class RuleTemplateApplyOut(BaseModel):
    source: SourceOut
    verification: VerificationOut | None = None
