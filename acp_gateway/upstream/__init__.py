from acp_gateway.upstream.channel import (
    CancellationSignal,
    PromptExecution,
    SessionUpdateChannel,
    check_prompt_result,
)
from acp_gateway.upstream.credentials import Credentials, CredentialsError, CredentialStore
from acp_gateway.upstream.protocol import (
    AgentClient,
    AgentClientFactory,
    SessionNotification,
    SessionUpdate,
    load_client_factory,
)

__all__ = [
    "AgentClient",
    "AgentClientFactory",
    "CancellationSignal",
    "CredentialStore",
    "Credentials",
    "CredentialsError",
    "PromptExecution",
    "SessionNotification",
    "SessionUpdate",
    "SessionUpdateChannel",
    "check_prompt_result",
    "load_client_factory",
]
