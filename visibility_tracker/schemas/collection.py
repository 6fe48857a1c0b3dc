import uuid

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QueryExecutionIn(_CamelModel):
    query_id: uuid.UUID
    brand_id: uuid.UUID
    customer_id: uuid.UUID
    query_text: str = Field(min_length=1, max_length=5000)
    intent: str | None = None
    locale: str = "en-US"
    country: str | None = Field(None, min_length=2, max_length=64)
    topic: str | None = None
    collectors: list[str] = Field(min_length=1)


class CollectionExecuteRequest(_CamelModel):
    queries: list[QueryExecutionIn] = Field(min_length=1, max_length=500)
    # run in the request instead of handing off to a Celery worker
    inline: bool = False


class CollectionResultOut(_CamelModel):
    query_id: uuid.UUID
    collector_type: str
    status: str
    response: str | None = None
    citations: list[str] = []
    urls: list[str] = []
    execution_time_ms: int = 0
    error: str | None = None
    provider: str | None = None
    fallback_used: bool = False
    collector_result_id: int | None = None


class CollectionExecuteResponse(_CamelModel):
    task_id: str | None = None
    results: list[CollectionResultOut] = []
