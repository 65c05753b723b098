from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime

JobTypeName = Literal["i18n", "cms", "training", "knowledge", "healthy_knowledge"]
JobStatusName = Literal["pending", "processing", "completed", "failed", "cancelled"]

class BackgroundTranslateRequest(BaseModel):
    job_id: Optional[str] = Field(None, alias="jobId")

class BackgroundTranslateResponse(BaseModel):
    started: bool
    jobId: str

class CreateJobRequest(BaseModel):
    source_language: str
    target_language: str
    mode: Literal["missing", "all"] = "missing"
    job_type: JobTypeName = "i18n"
    scope_id: Optional[str] = None
    created_by: Optional[str] = None

class JobStatusResponse(BaseModel):
    job_id: str
    job_type: JobTypeName
    source_language: str
    target_language: str
    mode: Literal["missing", "all"]
    scope_id: Optional[str] = None
    status: JobStatusName
    total_keys: int = 0
    processed_keys: int = 0
    errors: int = 0
    progress: int = 0
    error_message: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

class JobListResponse(BaseModel):
    jobs: list[JobStatusResponse]

class DeleteJobsRequest(BaseModel):
    job_ids: list[str]

class AutoTranslateRequest(BaseModel):
    type: str
    item_id: Optional[str] = None
    language_code: Optional[str] = None

class AutoTranslateResponse(BaseModel):
    success: bool
    jobs_created: int
    job_ids: list[str]
