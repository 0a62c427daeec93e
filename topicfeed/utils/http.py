"""
Remote call utilities for topicfeed.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar, Union

import async_timeout

from topicfeed.config import get_config
from topicfeed.errors import RemoteTimeoutError

# Configure logging
logger = logging.getLogger(__name__)

T = TypeVar('T')

# Request ceilings per network-context class, in seconds
REQUEST_TIMEOUTS = {
    'fast': 10.0,
    'slow': 20.0,
    'offline': 5.0,
}
DEFAULT_NETWORK = 'fast'

NetworkClassifier = Union[str, Callable[[], str]]


def network_class(classifier: Optional[NetworkClassifier] = None) -> str:
    """
    Resolve the current network-context class.

    Args:
        classifier: A fixed class name, a zero-argument callable returning one,
            or None for the configured default

    Returns:
        Network class name such as 'fast' or 'slow'
    """
    if callable(classifier):
        value = classifier()
    else:
        value = classifier
    return value or get_config('remote.default_network', DEFAULT_NETWORK)


def request_timeout(classifier: Optional[NetworkClassifier] = None) -> float:
    """
    Look up the request ceiling for the current network class.

    Args:
        classifier: See network_class()

    Returns:
        Timeout in seconds
    """
    name = network_class(classifier)
    timeouts = get_config('remote.timeouts', {}) or {}
    if name in timeouts:
        return float(timeouts[name])
    if name in REQUEST_TIMEOUTS:
        return REQUEST_TIMEOUTS[name]
    logger.warning(f"Unknown network class {name!r}, using {DEFAULT_NETWORK} timeout")
    return float(timeouts.get(DEFAULT_NETWORK, REQUEST_TIMEOUTS[DEFAULT_NETWORK]))


async def with_ceiling(awaitable: Awaitable[T], seconds: Optional[float], what: str = "remote call") -> T:
    """
    Await a remote call, aborting it once the ceiling elapses.

    An aborted call surfaces as RemoteTimeoutError so callers can treat it as
    a recoverable failure. Cancellation of the calling task still propagates.

    Args:
        awaitable: The pending remote call
        seconds: Ceiling in seconds, or None for no ceiling
        what: Description used in the error message

    Returns:
        The call's result
    """
    try:
        async with async_timeout.timeout(seconds):
            return await awaitable
    except asyncio.TimeoutError as e:
        logger.debug(f"{what} aborted after {seconds}s")
        raise RemoteTimeoutError(f"{what} exceeded {seconds}s") from e
