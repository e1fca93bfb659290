"""FastAPI application for the ICMS-ST credit engine."""

import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Path, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from stcredit.auth import SupabaseClientProvider, operator_from_user, verify_supabase_jwt
from stcredit.config import SERVICE_VERSION, StCreditConfig, get_config
from stcredit.dependencies import (
    AppResources,
    build_repository,
    get_app_config,
    get_repository,
)
from stcredit.exceptions import CompetenciaNotConfirmedError, ContractError
from stcredit.models import (
    AllocationRequest,
    AllocationResult,
    AllocationSaveResponse,
    BalanceConfirmRequest,
    BalanceEditRequest,
    BalanceUnconfirmRequest,
    Competencia,
    CompetenciaStatusResponse,
    CreditControlBuildRequest,
    CreditControlObservationsRequest,
    CreditControlResponse,
    CreditControlTransitionRequest,
    EnrichmentPreviewRequest,
    EnrichmentPreviewResponse,
    NoteBalanceView,
    StockMovementReport,
    SyncFailureResponse,
    SyncReportResponse,
)
from stcredit.repositories.base import BalanceRepository
from stcredit.services.carry_forward import BalanceCarryForward
from stcredit.services.competencia_lock import CompetenciaLock, LockStatus
from stcredit.services.credit_control import CreditControlService, to_response
from stcredit.services.fifo import allocate_fifo, to_snapshots
from stcredit.services.persistence import BalanceSynchronizer, SyncReport
from stcredit.services.workflow import WorkflowSession
from stcredit.stock_movement import parse_stock_movement_bytes

logger = logging.getLogger(__name__)

MAX_STOCK_REPORT_BYTES = 5 * 1024 * 1024

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["60/minute"],
    swallow_errors=True,
)

router = APIRouter()

Year = Annotated[int, Path(ge=2000, le=2100)]
Month = Annotated[int, Path(ge=1, le=12)]


def _status_response(lock_status: LockStatus) -> CompetenciaStatusResponse:
    return CompetenciaStatusResponse(
        company_id=lock_status.company_id,
        competencia=lock_status.competencia.label,
        confirmed=lock_status.confirmed,
        locked_by=lock_status.locked_by,
        source=lock_status.source,
    )


def _sync_response(report: SyncReport) -> SyncReportResponse:
    return SyncReportResponse(
        succeeded=[key.as_dict() for key in report.succeeded],
        failed=[
            SyncFailureResponse(key=failure.key.as_dict(), error=failure.error)
            for failure in report.failed
        ],
    )


def _require_confirmed(
    repository: BalanceRepository, company_id: str, competencia: Competencia
) -> None:
    if not CompetenciaLock(repository).status(company_id, competencia).confirmed:
        raise CompetenciaNotConfirmedError(
            f"Competência {competencia} must be confirmed first",
            company_id=company_id,
            competencia=competencia.label,
        )


def _carry_forward(
    repository: BalanceRepository, config: StCreditConfig, payload: Any
) -> BalanceCarryForward:
    return BalanceCarryForward(
        repository,
        payload.company_id,
        payload.competencia,
        strict=config.strict_opening_balance,
    )


@router.get("/health")
@limiter.exempt
async def health_check() -> Dict[str, Any]:
    """Health check endpoint for container orchestration."""
    return {
        "status": "healthy",
        "service": "stcredit",
        "version": SERVICE_VERSION,
    }


@router.post("/enrichment/preview", response_model=EnrichmentPreviewResponse)
@limiter.limit("30/minute")
async def preview_enrichment(
    request: Request,
    payload: EnrichmentPreviewRequest,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    config: StCreditConfig = Depends(get_app_config),
    repository: BalanceRepository = Depends(get_repository),
) -> EnrichmentPreviewResponse:
    """Join guias with invoices and seed opening balances, without writing."""

    def _run() -> EnrichmentPreviewResponse:
        session = WorkflowSession(
            repository,
            operator_from_user(user, config.operator_id),
            strict_opening_balance=config.strict_opening_balance,
        )
        session.select_competencia(payload.company_id, payload.competencia)
        rows = session.load(payload.payments, payload.invoices)
        return EnrichmentPreviewResponse(rows=rows, balances=session.views())

    return await run_in_threadpool(_run)


@router.get(
    "/competencias/{company_id}/{year}/{month}",
    response_model=CompetenciaStatusResponse,
)
@limiter.limit("60/minute")
async def competencia_status(
    request: Request,
    company_id: str,
    year: Year,
    month: Month,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    repository: BalanceRepository = Depends(get_repository),
) -> CompetenciaStatusResponse:
    _ = user
    competencia = Competencia(year=year, month=month)
    lock_status = await run_in_threadpool(
        CompetenciaLock(repository).status, company_id, competencia
    )
    return _status_response(lock_status)


@router.post(
    "/competencias/{company_id}/{year}/{month}/confirm",
    response_model=CompetenciaStatusResponse,
    responses={409: {"description": "Confirmed by another operator"}},
)
@limiter.limit("30/minute")
async def confirm_competencia(
    request: Request,
    company_id: str,
    year: Year,
    month: Month,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    config: StCreditConfig = Depends(get_app_config),
    repository: BalanceRepository = Depends(get_repository),
) -> CompetenciaStatusResponse:
    competencia = Competencia(year=year, month=month)
    operator = operator_from_user(user, config.operator_id)
    lock_status = await run_in_threadpool(
        CompetenciaLock(repository).confirm, company_id, competencia, operator
    )
    return _status_response(lock_status)


@router.post(
    "/competencias/{company_id}/{year}/{month}/reopen",
    response_model=CompetenciaStatusResponse,
)
@limiter.limit("30/minute")
async def reopen_competencia(
    request: Request,
    company_id: str,
    year: Year,
    month: Month,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    config: StCreditConfig = Depends(get_app_config),
    repository: BalanceRepository = Depends(get_repository),
) -> CompetenciaStatusResponse:
    competencia = Competencia(year=year, month=month)
    operator = operator_from_user(user, config.operator_id)
    lock_status = await run_in_threadpool(
        CompetenciaLock(repository).reopen, company_id, competencia, operator
    )
    return _status_response(lock_status)


@router.post(
    "/balances/confirm",
    response_model=SyncReportResponse,
    responses={
        409: {"description": "Competência not confirmed"},
        502: {"description": "Some snapshots failed to save"},
    },
)
@limiter.limit("30/minute")
async def confirm_balances(
    request: Request,
    payload: BalanceConfirmRequest,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    config: StCreditConfig = Depends(get_app_config),
    repository: BalanceRepository = Depends(get_repository),
) -> SyncReportResponse:
    """Confirm submitted opening balances in one batch."""
    _ = user

    def _run() -> SyncReport:
        _require_confirmed(repository, payload.company_id, payload.competencia)
        carry_forward = _carry_forward(repository, config, payload)
        carry_forward.load(payload.balances)
        for balance in payload.balances:
            if carry_forward.get(balance.guia_id).opening_balance != balance.opening_balance:
                carry_forward.edit_opening_balance(balance.guia_id, balance.opening_balance)
        report = carry_forward.confirm_all()
        report.raise_for_failures()
        return report

    return _sync_response(await run_in_threadpool(_run))


@router.post("/balances/edit", response_model=NoteBalanceView)
@limiter.limit("60/minute")
async def edit_balance(
    request: Request,
    payload: BalanceEditRequest,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    config: StCreditConfig = Depends(get_app_config),
    repository: BalanceRepository = Depends(get_repository),
) -> NoteBalanceView:
    """Edit one opening balance; confirmed notes are written through."""
    _ = user

    def _run() -> NoteBalanceView:
        carry_forward = _carry_forward(repository, config, payload)
        carry_forward.load([payload])
        carry_forward.edit_opening_balance(payload.guia_id, payload.opening_balance)
        return next(v for v in carry_forward.views() if v.guia_id == payload.guia_id)

    return await run_in_threadpool(_run)


@router.post("/balances/unconfirm", response_model=NoteBalanceView)
@limiter.limit("30/minute")
async def unconfirm_balance(
    request: Request,
    payload: BalanceUnconfirmRequest,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    config: StCreditConfig = Depends(get_app_config),
    repository: BalanceRepository = Depends(get_repository),
) -> NoteBalanceView:
    _ = user

    def _run() -> NoteBalanceView:
        carry_forward = _carry_forward(repository, config, payload)
        carry_forward.load([payload])
        carry_forward.unconfirm_one(payload.guia_id)
        return next(v for v in carry_forward.views() if v.guia_id == payload.guia_id)

    return await run_in_threadpool(_run)


@router.post(
    "/stock-movements/parse",
    response_model=StockMovementReport,
    responses={
        413: {"description": "Report too large"},
        422: {"description": "Malformed stock movement report"},
    },
)
@limiter.limit("20/minute")
async def parse_stock_report(
    request: Request,
    file: UploadFile = File(..., description="Stock movement CSV report"),
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    config: StCreditConfig = Depends(get_app_config),
) -> StockMovementReport:
    _ = user
    data = await file.read(MAX_STOCK_REPORT_BYTES + 1)
    if len(data) > MAX_STOCK_REPORT_BYTES:
        raise ContractError(
            "REPORT_TOO_LARGE",
            f"Stock report exceeds {MAX_STOCK_REPORT_BYTES:,} bytes",
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
        )
    return await run_in_threadpool(
        parse_stock_movement_bytes, data, config.stock_report_encoding
    )


@router.post("/allocations/compute", response_model=AllocationResult)
@limiter.limit("60/minute")
async def compute_allocation(
    request: Request,
    payload: AllocationRequest,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
) -> AllocationResult:
    _ = user
    return allocate_fifo(payload.total_exits, payload.rows)


@router.post(
    "/allocations/save",
    response_model=AllocationSaveResponse,
    responses={
        409: {"description": "Competência not confirmed"},
        502: {"description": "Some snapshots failed to save"},
    },
)
@limiter.limit("20/minute")
async def save_allocation(
    request: Request,
    payload: AllocationRequest,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    repository: BalanceRepository = Depends(get_repository),
) -> AllocationSaveResponse:
    """Compute the allocation and persist it as the period's snapshots."""
    _ = user

    def _run() -> AllocationSaveResponse:
        _require_confirmed(repository, payload.company_id, payload.competencia)
        result = allocate_fifo(payload.total_exits, payload.rows)
        openings = {row.guia_id: row.opening_balance for row in payload.rows}
        snapshots = to_snapshots(result, payload.company_id, payload.competencia, openings)
        report = BalanceSynchronizer(repository).upsert(snapshots)
        report.raise_for_failures()
        return AllocationSaveResponse(allocation=result, sync=_sync_response(report))

    return await run_in_threadpool(_run)


@router.post("/credit-control/build", response_model=CreditControlResponse)
@limiter.limit("20/minute")
async def build_credit_control(
    request: Request,
    payload: CreditControlBuildRequest,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    repository: BalanceRepository = Depends(get_repository),
) -> CreditControlResponse:
    _ = user
    record = await run_in_threadpool(
        CreditControlService(repository).build,
        payload.company_id,
        payload.competencia,
        payload.payments,
    )
    return to_response(record)


@router.post(
    "/credit-control/{company_id}/{year}/{month}/transition",
    response_model=CreditControlResponse,
    responses={409: {"description": "Transition not allowed"}},
)
@limiter.limit("30/minute")
async def transition_credit_control(
    request: Request,
    payload: CreditControlTransitionRequest,
    company_id: str,
    year: Year,
    month: Month,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    config: StCreditConfig = Depends(get_app_config),
    repository: BalanceRepository = Depends(get_repository),
) -> CreditControlResponse:
    record = await run_in_threadpool(
        CreditControlService(repository).transition,
        company_id,
        Competencia(year=year, month=month),
        payload.status,
        operator_from_user(user, config.operator_id),
    )
    return to_response(record)


@router.put(
    "/credit-control/{company_id}/{year}/{month}/observations",
    response_model=CreditControlResponse,
)
@limiter.limit("30/minute")
async def update_credit_control_observations(
    request: Request,
    payload: CreditControlObservationsRequest,
    company_id: str,
    year: Year,
    month: Month,
    user: dict[str, Any] = Depends(verify_supabase_jwt),
    repository: BalanceRepository = Depends(get_repository),
) -> CreditControlResponse:
    _ = user
    record = await run_in_threadpool(
        CreditControlService(repository).update_observations,
        company_id,
        Competencia(year=year, month=month),
        payload.observacoes,
    )
    return to_response(record)


async def rate_limit_exceeded_handler(
    request: Request, exc: RateLimitExceeded
) -> JSONResponse:
    """Rate limit exceeded handler."""
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please try again later."},
    )


async def contract_error_handler(request: Request, exc: ContractError) -> JSONResponse:
    """Map domain contract errors to stable API error payload."""
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": exc.code,
                "message": exc.message,
                "details": exc.details,
            }
        },
    )


def create_app(config: Optional[StCreditConfig] = None) -> FastAPI:
    """Build the FastAPI app; resources are created in the lifespan."""
    app_config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        provider = SupabaseClientProvider(app_config)
        app.state.stcredit_resources = AppResources(
            config=app_config,
            repository=build_repository(app_config, provider),
            supabase_client_provider=provider,
        )
        logger.info("storage backend: %s", app_config.storage_backend)
        yield

    app = FastAPI(
        title="ICMS-ST Credit Engine",
        description="Carry-forward and FIFO allocation of ICMS-ST credits",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.limiter = limiter
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_config.get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(ContractError, contract_error_handler)
    return app


app = create_app()


def main() -> None:
    """Run API server."""
    import uvicorn

    config = get_config()
    uvicorn.run("stcredit.api:app", host=config.api_host, port=config.api_port)


if __name__ == "__main__":
    main()
