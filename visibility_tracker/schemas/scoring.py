import uuid

from pydantic import BaseModel


class ScoringRunRequest(BaseModel):
    customer_id: uuid.UUID
    inline: bool = False


class ScoringErrorOut(BaseModel):
    collector_result_id: int
    stage: str
    error: str


class ScoringRunResponse(BaseModel):
    task_id: str | None = None
    worker_id: str | None = None
    processed: int = 0
    completed: int = 0
    positions_processed: int = 0
    sentiments_processed: int = 0
    citations_processed: int = 0
    analyses_run: int = 0
    stale_reset: int = 0
    lost_claims: int = 0
    errors: list[ScoringErrorOut] = []
