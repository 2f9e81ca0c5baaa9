from dataclasses import dataclass, field, replace
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from canvascast.pipeline.services import ObjectStorage, PipelineServices
from canvascast.pipeline.types import ArtifactBag


class ProjectRecord(BaseModel):
    id: UUID
    user_id: str
    title: str
    niche_preset: Optional[str] = None
    target_minutes: int = 1
    template_id: Optional[str] = None
    visual_preset_id: Optional[str] = None
    voice_profile_id: Optional[str] = None
    image_density: str = "normal"
    model_config = ConfigDict(from_attributes=True)


class InputRecord(BaseModel):
    type: str
    title: Optional[str] = None
    content_text: Optional[str] = None
    storage_path: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class JobRecord(BaseModel):
    id: UUID
    project_id: UUID
    user_id: str
    retry_count: int = 0
    cost_credits_reserved: int = 0
    model_config = ConfigDict(from_attributes=True)


def asset_base_path(user_id: str, project_id: UUID, job_id: UUID) -> str:
    return f"project-assets/u_{user_id}/p_{project_id}/j_{job_id}"


def output_base_path(user_id: str, project_id: UUID, job_id: UUID) -> str:
    return f"project-outputs/u_{user_id}/p_{project_id}/j_{job_id}"


@dataclass
class PipelineContext:
    job: JobRecord
    project: ProjectRecord
    services: PipelineServices
    storage: ObjectStorage
    inputs: list[InputRecord] = field(default_factory=list)
    artifacts: ArtifactBag = field(default_factory=ArtifactBag)

    @property
    def job_id(self) -> UUID:
        return self.job.id

    @property
    def project_id(self) -> UUID:
        return self.job.project_id

    @property
    def user_id(self) -> str:
        return self.job.user_id

    @property
    def base_path(self) -> str:
        return asset_base_path(self.user_id, self.project_id, self.job_id)

    @property
    def output_path(self) -> str:
        return output_base_path(self.user_id, self.project_id, self.job_id)

    def with_artifacts(self, artifacts: ArtifactBag) -> "PipelineContext":
        return replace(self, artifacts=artifacts)
