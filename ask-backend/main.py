"""
Ask API
=======

Endpoints:
    POST /ask                                question -> rows, pattern edges, neighbors, answer
    POST /patterns                           changeType -> elementChanged co-occurrence edges
    GET  /experiments/{experimentId}/similar focal experiment, ranked neighbors, {nodes, links}

Every endpoint requires the x-internal-api-key header when
AI_INTERNAL_API_KEY is set.

Status codes:
    400  missing question, or tabular and pattern branches both failed
    401  missing / wrong internal API key
    404  unknown experiment (similar endpoint)
    500  unexpected failure
    200  everything else, including single-branch failures (see "error")
"""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy import create_engine

from config import PipelineConfig, ServiceSettings
from entity_normalizer import FilterDirectives
from errors import BothFailedError
from executor import QueryExecutor
from llm_client import create_collaborator
from mode_classifier import RequestedMode
from pattern_aggregator import PatternAggregator
from query_pipeline import AskPipeline
from similarity_scorer import SimilarityScorer

load_dotenv()

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

APP_LOGGERS = [
    __name__, "config", "entity_normalizer", "person_filter", "query_sanitizer",
    "safety_guard", "mode_classifier", "pattern_aggregator", "similarity_scorer",
    "executor", "llm_client", "fallback_controller", "query_pipeline",
]


def configure_logging(level: str):
    """INFO (or LOG_LEVEL) for our modules, WARNING for libraries."""
    for name in APP_LOGGERS:
        logging.getLogger(name).setLevel(level)


# =============================================================================
# MODELS
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AskRequest(CamelModel):
    question: Optional[str] = None
    mode: RequestedMode = RequestedMode.AUTO
    experiment_id: Optional[str] = None
    summarize: bool = True


class AskResponse(CamelModel):
    mode_requested: str
    mode_classified: str
    mode_used: str
    fallback_used: bool
    rows: List[Dict[str, Any]]
    row_count: int
    query: str
    notes: Optional[str] = None
    pattern_rows: Optional[List[Dict[str, Any]]] = None
    pattern_row_count: Optional[int] = None
    pattern_window_months: Optional[int] = None
    similar_neighbors: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None
    branch_errors: Optional[Dict[str, str]] = None
    answer: Optional[str] = None
    summary_error: Optional[str] = None
    fallback: List[Dict[str, Any]] = []


class PatternRequest(CamelModel):
    vertical: Optional[str] = None
    geo: Optional[str] = None
    only_failed: bool = False
    only_winners: bool = False
    months_back: Optional[int] = None
    limit: Optional[int] = None


class PatternResponse(CamelModel):
    rows: List[Dict[str, Any]]
    row_count: int
    months_back: int
    widened: bool


# =============================================================================
# APP
# =============================================================================

def build_pipeline(settings: ServiceSettings, config: PipelineConfig) -> AskPipeline:
    engine = create_engine(settings.database_url, pool_pre_ping=True)
    return AskPipeline(
        collaborator=create_collaborator(settings),
        executor=QueryExecutor(engine),
        aggregator=PatternAggregator(engine, config),
        scorer=SimilarityScorer(engine, config),
        config=config,
    )


def create_app(
    pipeline: Optional[AskPipeline] = None,
    internal_api_key: Optional[str] = None,
) -> FastAPI:
    """
    Build the API. With no pipeline, settings are read from the environment
    at startup; tests pass a pipeline built on fakes instead.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            if app.state.pipeline is None:
                settings = ServiceSettings.from_env()
                configure_logging(settings.log_level)
                app.state.internal_api_key = settings.internal_api_key
                app.state.pipeline = build_pipeline(settings, PipelineConfig.from_env())
                logger.info(f"[STARTUP] Provider: {settings.ai_provider}")
            if not app.state.internal_api_key:
                logger.warning("[STARTUP] AI_INTERNAL_API_KEY is not set; endpoints are unauthenticated")
        except Exception as e:
            logger.error(f"Startup failed: {str(e)}")
            raise

        yield

        logger.info("Shutting down Ask API...")
        collaborator = getattr(app.state.pipeline, "collaborator", None)
        close = getattr(collaborator, "close", None)
        if close is not None:
            await close()

    app = FastAPI(
        title="Experiment Ask API",
        description="Read-only question answering over the experiment store",
        version="1.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.internal_api_key = internal_api_key

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_pipeline(request: Request) -> AskPipeline:
        if request.app.state.pipeline is None:
            raise HTTPException(status_code=503, detail="Pipeline not initialized")
        return request.app.state.pipeline

    def require_internal_key(
        request: Request,
        x_internal_api_key: Optional[str] = Header(default=None),
    ):
        expected = request.app.state.internal_api_key
        if not expected:
            return
        if not x_internal_api_key or not secrets.compare_digest(x_internal_api_key, expected):
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.post(
        "/ask",
        response_model=AskResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_internal_key)],
    )
    async def ask(body: AskRequest, pipeline: AskPipeline = Depends(get_pipeline)):
        question = (body.question or "").strip()
        if not question:
            raise HTTPException(status_code=400, detail="question is required")

        try:
            result = await pipeline.ask(
                question,
                mode=body.mode,
                experiment_id=body.experiment_id,
                summarize=body.summarize,
            )
        except BothFailedError as e:
            return JSONResponse(status_code=400, content={"error": e.message})
        except Exception as e:
            logger.exception(f"[PIPELINE] Unexpected failure: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        return AskResponse.model_validate(result.to_response())

    @app.post(
        "/patterns",
        response_model=PatternResponse,
        dependencies=[Depends(require_internal_key)],
    )
    async def patterns(body: PatternRequest, pipeline: AskPipeline = Depends(get_pipeline)):
        directives = FilterDirectives(
            vertical=body.vertical,
            geo=body.geo,
            only_failed=body.only_failed,
            only_winners=body.only_winners,
            months_back=body.months_back,
        )
        try:
            aggregation = await asyncio.to_thread(
                pipeline.aggregator.aggregate_with_retry, directives, body.limit
            )
        except Exception as e:
            logger.exception(f"[PATTERNS] Unexpected failure: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        return PatternResponse(
            rows=aggregation.to_rows(),
            row_count=aggregation.edge_count,
            months_back=aggregation.months_back,
            widened=aggregation.widened,
        )

    @app.get(
        "/experiments/{experiment_id}/similar",
        dependencies=[Depends(require_internal_key)],
    )
    async def similar(experiment_id: str, limit: Optional[int] = None, pipeline: AskPipeline = Depends(get_pipeline)):
        try:
            neighborhood = await asyncio.to_thread(pipeline.scorer.similar_to, experiment_id, limit)
        except Exception as e:
            logger.exception(f"[SIMILAR] Unexpected failure: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        if neighborhood is None:
            raise HTTPException(status_code=404, detail=f"Experiment {experiment_id} not found")
        return neighborhood

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
