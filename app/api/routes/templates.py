import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.errors import http_error
from app.core.auth import Principal
from app.core.config import Settings, get_settings
from app.core.security import get_operator_principal
from app.jobs.scheduler import get_scheduler
from app.schemas.sources import SourceOut
from app.schemas.templates import (
    RuleTemplateApplyOut,
    RuleTemplateApplyRequest,
    RuleTemplateDraftOut,
    RuleTemplatePreviewRequest,
    VerificationOut,
)
from app.services.extraction_config import dump_extraction_config, load_extraction_config
from app.services.repository import RepositoryError, get_repository
from app.services.rule_templates import (
    RuleTemplateError,
    RuleTemplatePreview,
    apply_rule_template,
    generate_rule_template,
    preview_rule_template,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/snapshots/{snapshot_id}/rule-template/generate", response_model=RuleTemplateDraftOut)
async def generate_snapshot_rule_template(
    snapshot_id: str,
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> RuleTemplateDraftOut:
    try:
        snapshot = await repository.get_raw_snapshot(snapshot_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc

    html = snapshot.get("raw_content") or ""
    try:
        template = await generate_rule_template(settings=settings, page_url=snapshot["source_url"], html=html)
    except RuleTemplateError as exc:
        raise http_error(exc) from exc

    preview = preview_rule_template(html, snapshot["source_url"], template)
    return RuleTemplateDraftOut(snapshot_id=snapshot_id, template=template, preview=preview)


@router.post("/snapshots/{snapshot_id}/rule-template/preview", response_model=RuleTemplatePreview)
async def preview_snapshot_rule_template(
    snapshot_id: str,
    payload: RuleTemplatePreviewRequest,
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> RuleTemplatePreview:
    try:
        snapshot = await repository.get_raw_snapshot(snapshot_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return preview_rule_template(snapshot.get("raw_content") or "", snapshot["source_url"], payload.template)


@router.post("/sources/{source_id}/rule-template/apply", response_model=RuleTemplateApplyOut)
async def apply_source_rule_template(
    source_id: str,
    payload: RuleTemplateApplyRequest,
    principal: Principal = Depends(get_operator_principal),
    repository=Depends(get_repository),
    scheduler=Depends(get_scheduler),
) -> RuleTemplateApplyOut:
    if not payload.template.extract.has_rules():
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="template has no field rules")

    try:
        source = await repository.get_source(source_id)
        verify_link = await repository.get_link(payload.verify_link_id) if payload.verify_link_id else None
    except RepositoryError as exc:
        raise http_error(exc) from exc
    if verify_link is not None and verify_link.source_id != source_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail="verify_link_id does not belong to this source",
        )

    current = load_extraction_config(source.extraction_config, source_id=source_id)
    merged = apply_rule_template(current, payload.template)
    try:
        updated = await repository.update_source(source_id, {"extraction_config": dump_extraction_config(merged)})
    except RepositoryError as exc:
        raise http_error(exc) from exc
    logger.info("rule template applied source_id=%s by=%s", source_id, principal.subject)

    verification = None
    if verify_link is not None:
        try:
            outcome = await scheduler.trigger_link(verify_link.id)
        except RepositoryError as exc:
            raise http_error(exc) from exc
        verification = VerificationOut(
            run_id=outcome.run_id,
            status=outcome.status,
            snapshot_id=outcome.snapshot_id,
            unchanged=outcome.unchanged,
            error=outcome.error,
        )

    return RuleTemplateApplyOut(source=SourceOut.model_validate(updated), verification=verification)
