"""Model invocation layer.

Public surface area for the providers package.  Import from here rather than
from the individual submodules so internal structure can change freely.

Example::

    from chatgateway.providers import (
        BedrockTransport,
        ChatGateway,
        ConversationMessage,
        InvocationRequest,
        RateLimitedError,
    )

    gateway = ChatGateway(BedrockTransport(region="us-east-1"))
    request = InvocationRequest(
        model_id="claude-sonnet-4",
        messages=[ConversationMessage(role="user", content="Hello")],
    )
    result = await gateway.invoke(request)
    print(result.content, result.cost_usd)
"""

from chatgateway.providers.catalog import (
    DEFAULT_MODEL_ID,
    MODEL_CATALOG,
    ModelCatalogEntry,
)
from chatgateway.providers.errors import (
    AccessDeniedError,
    DecodeFailureError,
    EmptyResponseError,
    GatewayError,
    InvalidRequestError,
    ModelNotFoundError,
    RateLimitedError,
    TimeoutError,
    TransportFailureError,
    UnsupportedProviderError,
    ValidationRejectedError,
)
from chatgateway.providers.gateway import ChatGateway, InvocationState
from chatgateway.providers.models import (
    ConversationMessage,
    FileAttachment,
    InvocationRequest,
    InvocationResult,
    Provider,
    Usage,
)
from chatgateway.providers.transport import BedrockTransport, ModelTransport

__all__ = [
    # Models
    "ConversationMessage",
    "FileAttachment",
    "InvocationRequest",
    "InvocationResult",
    "Provider",
    "Usage",
    # Catalog
    "DEFAULT_MODEL_ID",
    "MODEL_CATALOG",
    "ModelCatalogEntry",
    # Gateway
    "ChatGateway",
    "InvocationState",
    # Transport
    "BedrockTransport",
    "ModelTransport",
    # Errors
    "GatewayError",
    "InvalidRequestError",
    "UnsupportedProviderError",
    "AccessDeniedError",
    "ValidationRejectedError",
    "RateLimitedError",
    "ModelNotFoundError",
    "TransportFailureError",
    "TimeoutError",
    "DecodeFailureError",
    "EmptyResponseError",
]
