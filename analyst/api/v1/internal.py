"""Internal worker callback for push-style task substrates."""

import logging

from fastapi import APIRouter, BackgroundTasks, Header, status
from pydantic import BaseModel

from analyst.core.errors import WorkerAuthError
from analyst.core.security import verify_job
from analyst.workers.chat_turn import on_worker_invocation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["internal"], include_in_schema=False)


class WorkerJob(BaseModel):
    session_id: str
    message_id: str


@router.post("/chat-worker", status_code=status.HTTP_202_ACCEPTED)
async def chat_worker_callback(
    job: WorkerJob,
    background_tasks: BackgroundTasks,
    x_worker_signature: str | None = Header(default=None),
) -> dict:
    """Acknowledge a signed chat-turn job and run it after the response."""
    if not verify_job(job.session_id, job.message_id, x_worker_signature):
        raise WorkerAuthError()

    background_tasks.add_task(
        on_worker_invocation,
        {"session_id": job.session_id, "message_id": job.message_id, "signature": x_worker_signature},
    )
    logger.info("Accepted worker callback for message %s", job.message_id)
    return {"status": "accepted", "message_id": job.message_id}
