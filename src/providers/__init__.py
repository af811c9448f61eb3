"""Provider collaborators.

Each provider contains:
- An OperationSet implementation
- Its access-control policy, if any
- Its registration function

Providers are isolated from each other. A provider that fails to
register is logged and skipped; the others still load.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hub.core import Hub


def load_all_providers(hub: "Hub") -> None:
    """
    Load and register all providers.

    This is called at hub startup, before the listener accepts
    connections.
    """
    from shared.logging import get_logger
    from providers.image_gen import register_image_gen_provider
    from providers.n8n import register_n8n_provider
    from providers.ping import register_ping_provider
    from providers.spotify import register_spotify_provider

    logger = get_logger(__name__)

    for name, register in (
        ("ping", register_ping_provider),
        ("spotify", register_spotify_provider),
        ("image-gen", register_image_gen_provider),
        ("n8n", register_n8n_provider),
    ):
        try:
            register(hub)
        except Exception as e:
            logger.error("Provider registration failed", provider=name, error=str(e))


__all__ = ["load_all_providers"]
