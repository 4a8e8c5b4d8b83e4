from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from codex_tasks.core.errors import Conflict, InvalidState, NotFound, TaskError
from codex_tasks.core.service import TaskService
from codex_tasks.core.tasks import TaskState

# ---------- request / response models (module-level for FastAPI) ----------

class StartRequest(BaseModel):
    prompt: str
    title: Optional[str] = None
    working_dir: Optional[str] = None
    config_overrides: list[str] = Field(default_factory=list)
    repo_url: Optional[str] = None
    repo_ref: Optional[str] = None

class StartResponse(BaseModel):
    task_id: str

class SendRequest(BaseModel):
    prompt: str

class TaskResponse(BaseModel):
    id: str
    title: Optional[str] = None
    state: str
    created_at: str
    updated_at: str
    last_prompt: Optional[str] = None
    last_result: Optional[str] = None
    working_dir: str
    pid: Optional[int] = None
    config_overrides: list[str] = Field(default_factory=list)
    attempts: int = 0
    note: Optional[str] = None

class TaskListResponse(BaseModel):
    tasks: list[TaskResponse]

class LogResponse(BaseModel):
    task_id: str
    lines: list[str]

class OutcomesResponse(BaseModel):
    results: list[dict[str, Any]]

# ---------- error mapping ----------

_STATUS_BY_ERROR: list[tuple[type[TaskError], int]] = [
    (NotFound, 404),
    (InvalidState, 409),
    (Conflict, 409),
]


def _http_error(exc: TaskError) -> HTTPException:
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    return HTTPException(status_code=status, detail={"kind": exc.kind, "message": str(exc)})

# ---------- router factory ----------

def get_router(service: TaskService) -> APIRouter:
    router = APIRouter(prefix="/tasks")

    @router.get("", response_model=TaskListResponse)
    def list_tasks(
        state: Optional[list[str]] = Query(default=None),
        include_archived: bool = False,
    ) -> TaskListResponse:
        try:
            states = [TaskState.parse(s) for s in state] if state else None
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        records = service.list(states, include_archived=include_archived)
        return TaskListResponse(tasks=[TaskResponse(**r.to_dict()) for r in records])

    @router.post("", response_model=StartResponse)
    def start_task(req: StartRequest) -> StartResponse:
        try:
            task_id = service.start(
                req.prompt,
                title=req.title,
                working_dir=req.working_dir,
                config_overrides=req.config_overrides,
                repo_url=req.repo_url,
                repo_ref=req.repo_ref,
            )
        except TaskError as exc:
            raise _http_error(exc) from exc
        return StartResponse(task_id=task_id)

    @router.get("/{task_id}", response_model=TaskResponse)
    def task_status(task_id: str) -> TaskResponse:
        try:
            return TaskResponse(**service.status(task_id).to_dict())
        except TaskError as exc:
            raise _http_error(exc) from exc

    @router.post("/{task_id}/send")
    def send_prompt(task_id: str, req: SendRequest) -> dict[str, str]:
        try:
            service.send(task_id, req.prompt)
        except TaskError as exc:
            raise _http_error(exc) from exc
        return {"task_id": task_id, "status": "sent"}

    @router.get("/{task_id}/log", response_model=LogResponse)
    def task_log(task_id: str, lines: int = 50) -> LogResponse:
        try:
            raw = list(service.log(task_id, lines=max(lines, 0)))
        except TaskError as exc:
            raise _http_error(exc) from exc
        return LogResponse(task_id=task_id, lines=[line.rstrip("\n") for line in raw])

    @router.post("/{task_id}/stop")
    def stop_task(task_id: str) -> dict[str, Any]:
        try:
            return service.stop(task_id).to_dict()
        except TaskError as exc:
            raise _http_error(exc) from exc

    @router.post("/{task_id}/archive")
    def archive_task(task_id: str) -> dict[str, Any]:
        try:
            return service.archive(task_id).to_dict()
        except TaskError as exc:
            raise _http_error(exc) from exc

    @router.post("/archive-all", response_model=OutcomesResponse)
    def archive_all() -> OutcomesResponse:
        return OutcomesResponse(results=[o.to_dict() for o in service.archive_all()])

    return router
