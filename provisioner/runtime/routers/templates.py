"""Template registry endpoints (RPC-style).

All write operations use POST; reads use GET.
"""

from __future__ import annotations

from fastapi import APIRouter, Query, status

from provisioner.runtime.deps import Controller, Templates
from provisioner.runtime.errors import ProvisionerError
from provisioner.runtime.models.api import TemplateCreate, TemplateUpdateResult, TemplateValidateResponse
from provisioner.runtime.models.template import TemplateRecord

router = APIRouter(prefix="/templates", tags=["templates"])


@router.post("/add", response_model=TemplateRecord, status_code=status.HTTP_201_CREATED)
async def add_template(body: TemplateCreate, templates: Templates) -> TemplateRecord:
    """Fetch a template from its source and register it."""
    return await templates.add(
        body.name,
        body.source_url,
        sub_path=body.sub_path,
        ref=body.ref,
        description=body.description,
    )


@router.get("/list", response_model=list[TemplateRecord])
async def list_templates(templates: Templates) -> list[TemplateRecord]:
    return await templates.list()


@router.get("/{name}/get", response_model=TemplateRecord)
async def get_template(name: str, templates: Templates) -> TemplateRecord:
    return await templates.get(name)


@router.post("/{name}/update", response_model=TemplateRecord)
async def update_template(name: str, templates: Templates) -> TemplateRecord:
    """Re-fetch a template.  On failure the cached copy is left untouched."""
    return await templates.update(name)


@router.post("/update-all", response_model=list[TemplateUpdateResult])
async def update_all_templates(templates: Templates) -> list[TemplateUpdateResult]:
    """Re-fetch every template.  One failure does not stop the others."""
    results: list[TemplateUpdateResult] = []
    for record in await templates.list():
        try:
            updated = await templates.update(record.name)
        except ProvisionerError as exc:
            results.append(
                TemplateUpdateResult(name=record.name, success=False, error_kind=exc.kind, message=str(exc))
            )
            continue
        results.append(
            TemplateUpdateResult(
                name=record.name,
                success=True,
                changed=updated.content_hash != record.content_hash,
                record=updated,
            )
        )
    return results


@router.post("/{name}/remove", status_code=status.HTTP_204_NO_CONTENT)
async def remove_template(
    name: str,
    templates: Templates,
    controller: Controller,
    force: bool = Query(False, description="Remove even if workspaces reference it."),
) -> None:
    await templates.remove(name, force=force, in_use=controller.registry.template_references)


@router.post("/{name}/validate", response_model=TemplateValidateResponse)
async def validate_template(name: str, templates: Templates) -> TemplateValidateResponse:
    """Structurally check the cached content.  Invalid content is a 422."""
    files = await templates.validate(name)
    return TemplateValidateResponse(name=name, files=files)
