from app.services.gateways.autentique import AutentiqueClient, CreatedDocument, get_autentique_client
from app.services.gateways.base import GatewayClient
from app.services.gateways.vindi import VindiClient, get_vindi_client


def close_gateway_clients() -> None:
    """Fecha os clientes compartilhados; a próxima chamada às fábricas cria novos."""
    for factory in (get_autentique_client, get_vindi_client):
        if factory.cache_info().currsize:
            factory().close()
        factory.cache_clear()


__all__ = [
    "AutentiqueClient",
    "CreatedDocument",
    "GatewayClient",
    "VindiClient",
    "close_gateway_clients",
    "get_autentique_client",
    "get_vindi_client",
]
