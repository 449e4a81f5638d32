"""
Provider registry.

    providers = build_providers()
    adapter   = providers["runware"]

Only adapters with credentials in the environment are registered.
"""

import logging
from typing import Dict

from creatorstudio.core.config import cfg, Config
from creatorstudio.providers.base import (
    ProviderAdapter, ProviderMode, ProviderState, ProviderStatus, SubmitResult,
    ProviderError, TransientProviderError, PermanentProviderError, InvalidCallbackError,
)
from creatorstudio.providers.falai import FalAdapter
from creatorstudio.providers.runpod import RunPodAdapter
from creatorstudio.providers.runware import RunwareAdapter
from creatorstudio.providers.wavespeed import WaveSpeedAdapter

logger = logging.getLogger("creatorstudio.providers")


def build_providers(config: Config = cfg) -> Dict[str, ProviderAdapter]:
    providers: Dict[str, ProviderAdapter] = {}

    if config.RUNPOD_API_KEY and config.RUNPOD_ENDPOINT_ID:
        providers["runpod"] = RunPodAdapter(config.RUNPOD_API_KEY, config.RUNPOD_ENDPOINT_ID)
    if config.RUNWARE_API_KEY:
        providers["runware"] = RunwareAdapter(config.RUNWARE_API_KEY)
    if config.FAL_KEY:
        providers["falai"] = FalAdapter(config.FAL_KEY)
    if config.WAVESPEED_API_KEY:
        providers["wavespeed"] = WaveSpeedAdapter(
            config.WAVESPEED_API_KEY, use_webhook=config.WAVESPEED_USE_WEBHOOK
        )

    if providers:
        logger.info(f"✓ Providers: {', '.join(f'{n} ({a.mode.value})' for n, a in providers.items())}")
    else:
        logger.warning("⚠️  No provider API keys set — every generation request will be rejected")
    return providers


__all__ = [
    "ProviderAdapter", "ProviderMode", "ProviderState", "ProviderStatus", "SubmitResult",
    "ProviderError", "TransientProviderError", "PermanentProviderError", "InvalidCallbackError",
    "RunPodAdapter", "RunwareAdapter", "FalAdapter", "WaveSpeedAdapter",
    "build_providers",
]
