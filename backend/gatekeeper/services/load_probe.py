"""Downstream load probe feeding the difficulty controller."""

import math

import httpx
import structlog

from gatekeeper.config import settings
from gatekeeper.services.difficulty_service import DifficultyController, LoadSignal, SignalKind

logger = structlog.get_logger()


def fetch_downstream_load(
    url: str, client: httpx.Client | None = None, timeout: float = 5.0
) -> float | None:
    """
    Read the downstream service's load from a JSON endpoint.

    Expects a body like ``{"load": 0.42}``. The reading is clamped to [0, 1].
    Returns None when the probe fails; failures are logged, never raised.
    """
    owns_client = client is None
    if client is None:
        client = httpx.Client()
    try:
        response = client.get(url, timeout=timeout)
        response.raise_for_status()
        load = float(response.json()["load"])
    except httpx.HTTPStatusError as e:
        logger.error("downstream_load_probe_error", status_code=e.response.status_code)
        return None
    except httpx.RequestError as e:
        logger.error("downstream_load_probe_request_error", error=str(e))
        return None
    except (KeyError, TypeError, ValueError):
        logger.warning("downstream_load_probe_malformed")
        return None
    finally:
        if owns_client:
            client.close()

    if not math.isfinite(load):
        logger.warning("downstream_load_probe_malformed")
        return None
    return min(max(load, 0.0), 1.0)


def probe_downstream_load(
    controller: DifficultyController, client: httpx.Client | None = None
) -> float | None:
    """Probe the configured downstream and record the reading."""
    url = settings.downstream_load_url
    if not url:
        logger.debug("downstream_load_url_not_configured")
        return None

    load = fetch_downstream_load(url, client=client)
    if load is not None:
        controller.observe(LoadSignal(SignalKind.DOWNSTREAM_LOAD, load))
        logger.debug("downstream_load_observed", load=load)
    return load
