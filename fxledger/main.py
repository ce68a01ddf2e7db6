import logging
from contextlib import asynccontextmanager, contextmanager
from dataclasses import asdict
from datetime import date
from decimal import Decimal
from typing import AsyncIterator, Iterator

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from fxledger.balance import BalanceReconstructor
from fxledger.config import (
    configure_logging,
    get_database_url,
    get_frontend_origin,
    get_system_default_currency,
)
from fxledger.currency_conversion import CurrencyConverter
from fxledger.errors import NotFoundError, PersistenceError, ValidationError
from fxledger.flow import FlowAggregator
from fxledger.models import DerivationResult, ExchangeRate, RateType
from fxledger.rate_derivation import RateGraphDeriver
from fxledger.storage import Ledger, RateStore, init_db
from fxledger.trends import TrendAggregator, normalize_granularity, normalize_range
from fxledger.validation import normalize_currency

logger = logging.getLogger(__name__)


class CurrencyPayload(BaseModel):
    code: str
    symbol: str = ""
    decimal_places: int = 2
    custom: bool = False


class CurrencyResponse(BaseModel):
    code: str
    symbol: str
    decimal_places: int
    custom: bool


class RatePayload(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    effective_date: date
    type: str = RateType.USER
    notes: str | None = None


class RateUpdatePayload(BaseModel):
    rate: Decimal
    notes: str | None = None


class RateResponse(BaseModel):
    id: int | None = None
    from_currency: str
    to_currency: str
    rate: Decimal
    effective_date: date
    type: str
    source_rate_id: int | None = None
    notes: str | None = None


class DerivePayload(BaseModel):
    effective_date: date | None = None


class DerivationResponse(BaseModel):
    success: bool
    generated_count: int
    reverse_count: int
    transitive_count: int
    errors: list[str]


class RateChangeResponse(BaseModel):
    rate: RateResponse | None = None
    derivation: DerivationResponse


class PruneResponse(BaseModel):
    cleaned_count: int
    currency_pairs: list[str]
    derivation: DerivationResponse


class MissingRateResponse(BaseModel):
    from_currency: str
    to_currency: str


class ConvertItem(BaseModel):
    amount: Decimal
    currency: str


class ConvertPayload(BaseModel):
    items: list[ConvertItem]
    target_currency: str
    as_of: date | None = None


class ConversionResponse(BaseModel):
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    target_currency: str
    rate: Decimal
    success: bool
    rate_date: date | None = None
    error: str | None = None


class BalanceResponse(BaseModel):
    account_id: int
    as_of: date
    balances: dict[str, Decimal]


class FlowResponse(BaseModel):
    account_id: int
    start: date
    end: date
    totals: dict[str, Decimal]


class TrendPointResponse(BaseModel):
    date: str
    bucket_start: date
    bucket_end: date
    original_amount: Decimal | None = None
    original_currency: str
    converted_amount: Decimal | None = None
    transaction_count: int
    has_conversion_error: bool


class TrendResponse(BaseModel):
    account_id: int
    account_type: str
    range: str
    granularity: str
    display_currency: str
    data: list[TrendPointResponse]


def get_user_id(x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


@contextmanager
def http_errors() -> Iterator[None]:
    try:
        yield
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail="Storage unavailable, retry later.") from exc


def rate_response(rate: ExchangeRate) -> RateResponse:
    return RateResponse(
        id=rate.id,
        from_currency=rate.from_currency,
        to_currency=rate.to_currency,
        rate=rate.rate,
        effective_date=rate.effective_date,
        type=rate.type,
        source_rate_id=rate.source_rate_id,
        notes=rate.notes,
    )


def derivation_response(result: DerivationResult) -> DerivationResponse:
    return DerivationResponse(
        success=result.success,
        generated_count=result.generated_count,
        reverse_count=result.reverse_count,
        transitive_count=result.transitive_count,
        errors=result.errors,
    )


def create_app(engine: Engine | None = None) -> FastAPI:
    configure_logging()
    if engine is None:
        database_url = get_database_url()
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        engine = create_engine(database_url, connect_args=connect_args)

    store = RateStore(engine)
    ledger = Ledger(engine)
    deriver = RateGraphDeriver(store)
    converter = CurrencyConverter(store)
    balances = BalanceReconstructor(ledger)
    flows = FlowAggregator(ledger)
    trends = TrendAggregator(ledger, converter)
    default_currency = get_system_default_currency()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        init_db(engine)
        logger.info("Database ready at %s", engine.url.render_as_string(hide_password=True))
        yield

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[get_frontend_origin()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = engine
    app.state.store = store
    app.state.ledger = ledger

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.post("/currencies", response_model=CurrencyResponse)
    def register_currency(
        payload: CurrencyPayload, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> CurrencyResponse:
        user_id = get_user_id(x_user_id)
        with http_errors():
            currency = store.register_currency(
                user_id,
                payload.code,
                symbol=payload.symbol,
                decimal_places=payload.decimal_places,
                custom=payload.custom,
            )
        return CurrencyResponse(
            code=currency.code,
            symbol=currency.symbol,
            decimal_places=currency.decimal_places,
            custom=currency.created_by is not None,
        )

    @app.get("/exchange-rates", response_model=list[RateResponse])
    def list_rates(
        type: str | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[RateResponse]:
        user_id = get_user_id(x_user_id)
        with http_errors():
            rates = store.list_rates(user_id, rate_type=type)
        return [rate_response(rate) for rate in rates]

    @app.post("/exchange-rates", response_model=RateChangeResponse)
    def create_rate(
        payload: RatePayload, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> RateChangeResponse:
        user_id = get_user_id(x_user_id)
        with http_errors():
            rate = store.add_rate(
                user_id,
                payload.from_currency,
                payload.to_currency,
                payload.rate,
                payload.effective_date,
                rate_type=payload.type,
                notes=payload.notes,
            )
            result = deriver.derive(user_id)
        return RateChangeResponse(rate=rate_response(rate), derivation=derivation_response(result))

    @app.put("/exchange-rates/{rate_id}", response_model=RateChangeResponse)
    def update_rate(
        rate_id: int,
        payload: RateUpdatePayload,
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> RateChangeResponse:
        user_id = get_user_id(x_user_id)
        with http_errors():
            rate = store.update_rate(user_id, rate_id, payload.rate, notes=payload.notes)
            result = deriver.derive(user_id)
        return RateChangeResponse(rate=rate_response(rate), derivation=derivation_response(result))

    @app.delete("/exchange-rates/{rate_id}", response_model=RateChangeResponse)
    def delete_rate(
        rate_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> RateChangeResponse:
        user_id = get_user_id(x_user_id)
        with http_errors():
            store.delete_rate(user_id, rate_id)
            result = deriver.derive(user_id)
        return RateChangeResponse(derivation=derivation_response(result))

    @app.post("/exchange-rates/derive", response_model=DerivationResponse)
    def derive_rates(
        payload: DerivePayload, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> DerivationResponse:
        user_id = get_user_id(x_user_id)
        with http_errors():
            result = deriver.derive(user_id, payload.effective_date)
        return derivation_response(result)

    @app.post("/exchange-rates/prune", response_model=PruneResponse)
    def prune_rates(x_user_id: str | None = Header(None, alias="x-user-id")) -> PruneResponse:
        user_id = get_user_id(x_user_id)
        with http_errors():
            pruned = store.prune_history(user_id)
            result = deriver.derive(user_id)
        return PruneResponse(
            cleaned_count=pruned.cleaned_count,
            currency_pairs=pruned.currency_pairs,
            derivation=derivation_response(result),
        )

    @app.get("/exchange-rates/missing", response_model=list[MissingRateResponse])
    def missing_rates(
        base_currency: str | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> list[MissingRateResponse]:
        user_id = get_user_id(x_user_id)
        with http_errors():
            missing = converter.missing_rates(user_id, base_currency or default_currency)
        return [
            MissingRateResponse(from_currency=source, to_currency=target)
            for source, target in missing
        ]

    @app.post("/currency/convert", response_model=list[ConversionResponse])
    def convert(
        payload: ConvertPayload, x_user_id: str | None = Header(None, alias="x-user-id")
    ) -> list[ConversionResponse]:
        user_id = get_user_id(x_user_id)
        results = converter.convert_multiple_currencies(
            user_id,
            [(item.amount, item.currency) for item in payload.items],
            payload.target_currency,
            payload.as_of,
        )
        return [ConversionResponse(**asdict(result)) for result in results]

    @app.get("/accounts/{account_id}/balance", response_model=BalanceResponse)
    def account_balance(
        account_id: int,
        as_of: date | None = Query(None),
        currency: str | None = Query(None),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> BalanceResponse:
        user_id = get_user_id(x_user_id)
        as_of = as_of or date.today()
        with http_errors():
            if currency:
                normalized = normalize_currency(currency)
                balance = balances.balance_as_of(user_id, account_id, normalized, as_of)
                found = {} if balance is None else {normalized: balance}
            else:
                found = balances.balances_as_of(user_id, account_id, as_of)
        return BalanceResponse(account_id=account_id, as_of=as_of, balances=found)

    @app.get("/accounts/{account_id}/flow", response_model=FlowResponse)
    def account_flow(
        account_id: int,
        start: date = Query(...),
        end: date = Query(...),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> FlowResponse:
        user_id = get_user_id(x_user_id)
        with http_errors():
            totals = flows.sums_by_currency(user_id, account_id, start, end)
        return FlowResponse(account_id=account_id, start=start, end=end, totals=totals)

    @app.get("/accounts/{account_id}/trends", response_model=TrendResponse)
    def account_trends(
        account_id: int,
        range: str = Query("lastYear"),
        granularity: str | None = Query(None),
        display_currency: str | None = Query(None),
        cumulative: bool = Query(False),
        x_user_id: str | None = Header(None, alias="x-user-id"),
    ) -> TrendResponse:
        user_id = get_user_id(x_user_id)
        with http_errors():
            account = ledger.require_account(user_id, account_id)
            range_name = normalize_range(range)
            granularity_name = normalize_granularity(granularity, range_name)
            target = normalize_currency(display_currency or default_currency)
            points = trends.build_series(
                user_id,
                account_id,
                range_name=range_name,
                granularity=granularity_name,
                display_currency=target,
                cumulative=cumulative,
            )
        return TrendResponse(
            account_id=account_id,
            account_type=account.type,
            range=range_name,
            granularity=granularity_name,
            display_currency=target,
            data=[TrendPointResponse(**asdict(point)) for point in points],
        )

    return app


app = create_app()
