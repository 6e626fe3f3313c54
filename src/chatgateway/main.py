import aioboto3
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import make_asgi_app
from pydantic import SecretStr

from chatgateway.api.chat import router as chat_router
from chatgateway.api.health import router as health_router
from chatgateway.config import Settings, settings
from chatgateway.providers import BedrockTransport, ChatGateway

# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        structlog.stdlib.NAME_TO_LEVEL.get(settings.log_level.lower(), 20)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()

# ---------------------------------------------------------------------------
# OpenTelemetry
# ---------------------------------------------------------------------------
resource = Resource.create({"service.name": settings.otel_service_name})
tracer_provider = TracerProvider(resource=resource)
otlp_exporter = OTLPSpanExporter(
    endpoint=f"{settings.otel_exporter_otlp_endpoint}/v1/traces",
)
tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
trace.set_tracer_provider(tracer_provider)

# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Chat Gateway",
    version=settings.app_version,
    description=(
        "Uniform chat access to Anthropic, Meta and DeepSeek models on AWS "
        "Bedrock, with streaming, cost accounting and full observability."
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Model", "X-Provider"],
)

# Prometheus metrics endpoint mounted as a sub-application
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# Routers
app.include_router(health_router)
app.include_router(chat_router)

# Instrument *after* routes are registered
FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)


def build_gateway(config: Settings) -> ChatGateway:
    """Create the Bedrock-backed gateway described by *config*.

    Explicit credentials are optional; without them aioboto3 uses the standard
    AWS credential chain (environment, shared config, instance role).
    """
    session = aioboto3.Session(
        aws_access_key_id=_secret(config.aws_access_key_id),
        aws_secret_access_key=_secret(config.aws_secret_access_key),
        aws_session_token=_secret(config.aws_session_token),
        region_name=config.aws_region,
    )
    transport = BedrockTransport(
        region=config.aws_region,
        timeout=config.llm_timeout,
        session=session,
    )
    return ChatGateway(
        transport,
        default_model_id=config.default_model_id,
        thinking_budget_tokens=config.thinking_budget_tokens,
        attachment_text_limit=config.attachment_text_limit,
    )


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------
@app.on_event("startup")
async def _startup() -> None:
    # One shared gateway on app state; get_gateway() injects it into handlers.
    app.state.gateway = build_gateway(settings)

    log.info(
        "chat_gateway_ready",
        host=settings.host,
        port=settings.port,
        aws_region=settings.aws_region,
        default_model=settings.default_model_id,
        llm_timeout=settings.llm_timeout,
        llm_max_retries=settings.llm_max_retries,
        otel_endpoint=settings.otel_exporter_otlp_endpoint,
    )


@app.on_event("shutdown")
async def _shutdown() -> None:
    log.info("chat_gateway_shutting_down")
    tracer_provider.shutdown()
