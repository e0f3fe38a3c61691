from src.app.domain.models.tool_descriptor import TransportKind
from src.app.domain.repositories import TransportAdapter
from src.app.infrastructure.transports.oneshot import OneShotTransport
from src.app.infrastructure.transports.stdio import StdioTransport
from src.setup.supervisor_config import SupervisorSettings, get_supervisor_settings

TRANSPORTS = {
    TransportKind.STDIO: StdioTransport,
    TransportKind.ONESHOT: OneShotTransport,
}


def build_transport(
    kind: TransportKind, settings: SupervisorSettings | None = None
) -> TransportAdapter:
    try:
        transport_cls = TRANSPORTS[kind]
    except KeyError as exc:
        raise ValueError(f"No transport registered for kind {kind!r}") from exc
    return transport_cls.from_settings(settings or get_supervisor_settings())


__all__ = [
    "OneShotTransport",
    "StdioTransport",
    "TRANSPORTS",
    "build_transport",
]
