from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from canvascast.api.deps import DbSession
from canvascast.commands.create_job import create_project as create_project_command
from canvascast.commands.create_job import list_project_inputs
from canvascast.db.models import Project
from canvascast.domain.states import ProjectStatus

router = APIRouter()

class ProjectInputCreate(BaseModel):
    type: Literal["text", "file", "url"] = "text"
    title: Optional[str] = None
    content_text: Optional[str] = None
    storage_path: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)

class ProjectCreate(BaseModel):
    user_id: str
    title: str
    niche_preset: Optional[str] = None
    target_minutes: int = Field(default=1, ge=1)
    template_id: Optional[str] = None
    visual_preset_id: Optional[str] = None
    voice_profile_id: Optional[str] = None
    image_density: Literal["low", "normal", "high"] = "normal"
    inputs: list[ProjectInputCreate] = Field(default_factory=list)

class ProjectInputResponse(BaseModel):
    id: UUID
    type: str
    title: Optional[str] = None
    content_text: Optional[str] = None
    storage_path: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

class ProjectResponse(BaseModel):
    id: UUID
    user_id: str
    title: str
    niche_preset: Optional[str] = None
    target_minutes: int
    image_density: str
    voice_profile_id: Optional[str] = None
    status: ProjectStatus
    timeline_path: Optional[str] = None
    created_at: datetime
    inputs: list[ProjectInputResponse] = Field(default_factory=list)

def _to_response(project: Project, inputs) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        user_id=project.user_id,
        title=project.title,
        niche_preset=project.niche_preset,
        target_minutes=project.target_minutes,
        image_density=project.image_density,
        voice_profile_id=project.voice_profile_id,
        status=project.status,
        timeline_path=project.timeline_path,
        created_at=project.created_at,
        inputs=[ProjectInputResponse.model_validate(i) for i in inputs]
    )

@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(payload: ProjectCreate, session: DbSession):
    project = await create_project_command(
        session,
        user_id=payload.user_id,
        title=payload.title,
        inputs=[i.model_dump() for i in payload.inputs],
        **payload.model_dump(exclude={"user_id", "title", "inputs"})
    )
    await session.commit()
    inputs = await list_project_inputs(session, project.id)
    return _to_response(project, inputs)

@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: UUID, session: DbSession):
    project = await session.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    inputs = await list_project_inputs(session, project_id)
    return _to_response(project, inputs)
