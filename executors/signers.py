"""Resolve the transaction signer named by ``CONTROLLER_SIGNER``.

Key material never lives in this package. Operators point the controller at a
factory of their own, ``"package.module:factory"``, which is called with the
:class:`~utils.controller_config.ControllerConfig` and must return an object
with ``sign(messages, memo, sequence)``.
"""
from __future__ import annotations

import importlib
from typing import Any, Callable

from executors.base import TxSigner
from utils.controller_config import ConfigError, ControllerConfig
from utils.structured_logging import get_logger

LOG = get_logger("aperture_controller.signers")


def _resolve(target: str) -> Callable[[ControllerConfig], Any]:
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"signer must look like 'module:factory', got {target!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"signer module {module_name!r} cannot be imported: {exc}") from exc
    factory = module
    for part in attr.split("."):
        factory = getattr(factory, part, None)
        if factory is None:
            raise ConfigError(f"signer factory {attr!r} not found in {module_name!r}")
    if not callable(factory):
        raise ConfigError(f"signer factory {target!r} is not callable")
    return factory


def load_signer(target: str, config: ControllerConfig) -> TxSigner:
    signer = _resolve(target)(config)
    if not callable(getattr(signer, "sign", None)):
        raise ConfigError(f"signer factory {target!r} returned {type(signer).__name__} without sign()")
    LOG.info("transaction signer loaded from %s", target)
    return signer
