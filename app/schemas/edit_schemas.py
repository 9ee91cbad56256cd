from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, Literal

# Schemas for edit endpoints and the task manager

TaskStatus = Literal["pending", "processing", "completed", "failed"]

class CamelModel(BaseModel):
    """Accepts and emits camelCase JSON keys (`imageUrl`) while using snake_case attributes."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class TaskError(CamelModel):
    code: str
    message: str
    details: Optional[str] = None

class EditTask(BaseModel):
    """An edit task as held by the task store."""
    id: str
    status: TaskStatus = "pending"
    original_image_id: str
    original_image_token: Optional[str] = None
    image_url: Optional[str] = None
    prompt: str
    result_image_id: Optional[str] = None
    result_image_url: Optional[str] = None
    text_response: Optional[str] = None
    error: Optional[TaskError] = None
    created_at: int # epoch ms
    completed_at: Optional[int] = None

    # Output of /api/edit/process, waiting for /api/edit/save
    processed_image_data: Optional[str] = None
    processed_mime_type: Optional[str] = None

# Request bodies. Fields are optional so missing values can be reported with specific error codes.

class EditStartRequest(CamelModel):
    prompt: Optional[str] = None
    image_url: Optional[str] = None
    auto_process: bool = True # False when the client drives /process and /save itself

class EditProcessRequest(CamelModel):
    task_id: Optional[str] = None
    image_id: Optional[str] = None
    prompt: Optional[str] = None

class EditSaveRequest(CamelModel):
    task_id: Optional[str] = None
    processed_image_data: Optional[str] = None
    response_type: Optional[str] = Field(default=None, description="MIME type of processed_image_data")

# Response payloads (the `data` member of the envelope)

class TaskResult(CamelModel):
    id: Optional[str] = None
    url: Optional[str] = None
    text_response: Optional[str] = None

class EditStatusData(CamelModel):
    task_id: str
    status: TaskStatus
    message: Optional[str] = None
    result: Optional[TaskResult] = None
    error: Optional[TaskError] = None

class TaskStatusData(CamelModel):
    """Payload of GET /api/task/status."""
    task_id: str
    status: TaskStatus
    created_at: int
    original_image_id: str
    prompt: str
    result_image_id: Optional[str] = None
    result_image_url: Optional[str] = None
    text_response: Optional[str] = None
    completed_at: Optional[int] = None
    error: Optional[TaskError] = None

class ProcessResultData(CamelModel):
    task_id: Optional[str] = None
    processed_image_data: str
    response_type: str
    text: Optional[str] = None

class UploadData(CamelModel):
    id: str
    image_url: str
    image_id: str
    file_token: str
