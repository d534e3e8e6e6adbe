import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from analytics_engine.core import schemas
from analytics_engine.core.dependencies import get_orchestrator
from analytics_engine.core.errors import (
    DataSourceNotFound,
    ExecutionError,
    ValidationError,
)
from analytics_engine.core.query.orchestrator import QueryOrchestrator
from analytics_engine.core.security import get_security_context, validate_admin_scope

router = APIRouter(prefix="/analytics", tags=["Analytics"])

orchestrator_dep = Annotated[QueryOrchestrator, Depends(get_orchestrator)]
context_dep = Annotated[schemas.SecurityContext, Depends(get_security_context)]
admin_dep = Annotated[schemas.SecurityContext, Depends(validate_admin_scope)]


@router.post("/query", response_model=schemas.QueryResult)
async def run_query(
    params: schemas.QueryParams,
    context: context_dep,
    orchestrator: orchestrator_dep,
):
    """
    Run an analytics query for the caller's tenants.
    Rejections name the offending field and nothing else.
    """
    try:
        return await orchestrator.query(params, context)

    except DataSourceNotFound as error:
        raise HTTPException(
            status.HTTP_404_NOT_FOUND,
            {"message": error.public_message(), "field": error.field},
        )

    except ValidationError as error:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            {"message": error.public_message(), "field": error.field},
        )

    except ExecutionError as error:
        logging.error(f"Analytics query failed for data source {params.data_source_id}: {error.message}")
        code = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if error.retryable
            else status.HTTP_502_BAD_GATEWAY
        )
        raise HTTPException(code, {"message": error.public_message(), "field": None})


@router.post(
    "/data-sources/{data_source_id}/invalidate",
    response_model=schemas.InvalidationResponse,
)
async def invalidate_data_source(
    data_source_id: int,
    context: admin_dep,
    orchestrator: orchestrator_dep,
):
    """Admin-only: drop cached results and metadata after the table changed."""
    deleted = await orchestrator.invalidate_data_source(data_source_id)
    return schemas.InvalidationResponse(data_source_id=data_source_id, results_deleted=deleted)
