from .auth import (
    AuthStrategy,
    BasicAuth,
    DockerHubTokenAuth,
    authenticate,
    basic_credential,
    repository_scope,
    strategy_for,
)
from .client import (
    DEFAULT_TRANSPORTS,
    HTTP,
    HTTPS,
    OperationContext,
    RegistryClient,
    Transport,
    transports_for,
)
