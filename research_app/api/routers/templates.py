import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException, status

from research_app.dependencies import get_templates
from research_app.models.schemas import TemplateSummary
from research_app.models.template import ReportTemplate
from research_app.services.templates import TemplateRegistry

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/templates", response_model=List[TemplateSummary], summary="List report templates")
async def list_templates(templates: TemplateRegistry = Depends(get_templates)):
    return [
        TemplateSummary(
            id=template.id,
            name=template.name,
            description=template.description,
            sections=[section.title for section in template.sections],
        )
        for template in templates.list()
    ]


@router.get("/templates/{template_id}", response_model=ReportTemplate, summary="Get a report template")
async def get_template(template_id: str, templates: TemplateRegistry = Depends(get_templates)):
    template = templates.get(template_id)
    if template is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Template '{template_id}' not found."
        )
    return template
