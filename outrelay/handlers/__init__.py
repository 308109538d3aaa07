"""Standard outbox handlers and their gateway contracts."""

from outrelay.core.registry import HandlerRegistry
from outrelay.handlers.archive import (
    BlobAlreadyExistsError,
    BlobNotFoundError,
    BlobStore,
    DocumentArchivalHandler,
    InMemoryBlobStore,
)
from outrelay.handlers.identity import (
    AccountExistsError,
    IdentityProvider,
    IdentityProvisioningHandler,
    InMemoryIdentityProvider,
)
from outrelay.handlers.messaging import (
    EmailGateway,
    EmailSendHandler,
    GatewayError,
    InMemoryEmailGateway,
    InMemoryMessageGateway,
    MessageGateway,
    MessageSendHandler,
)


def build_registry(
    identity_provider: IdentityProvider,
    email_gateway: EmailGateway,
    message_gateway: MessageGateway,
    blob_store: BlobStore,
    login_domain: str = "accounts.local",
    retention_prefix: str = "archive",
) -> HandlerRegistry:
    """Wire the standard handler set around the given gateways."""
    return HandlerRegistry(
        [
            IdentityProvisioningHandler(identity_provider, login_domain=login_domain),
            EmailSendHandler(email_gateway),
            MessageSendHandler(message_gateway),
            DocumentArchivalHandler(blob_store, retention_prefix=retention_prefix),
        ]
    )


def build_in_memory_registry() -> HandlerRegistry:
    """Standard handlers over in-memory gateways, for local runs."""
    return build_registry(
        InMemoryIdentityProvider(),
        InMemoryEmailGateway(),
        InMemoryMessageGateway(),
        InMemoryBlobStore(),
    )


__all__ = [
    "build_registry",
    "build_in_memory_registry",
    "IdentityProvisioningHandler",
    "EmailSendHandler",
    "MessageSendHandler",
    "DocumentArchivalHandler",
    "IdentityProvider",
    "EmailGateway",
    "MessageGateway",
    "BlobStore",
    "InMemoryIdentityProvider",
    "InMemoryEmailGateway",
    "InMemoryMessageGateway",
    "InMemoryBlobStore",
    "AccountExistsError",
    "BlobAlreadyExistsError",
    "BlobNotFoundError",
    "GatewayError",
]
