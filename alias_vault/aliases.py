"""
Alias token generation.

Tokens are drawn uniformly from ``[a-z0-9]``. At the default length of 12
there are 36**12 (about 4.7e18) possible tokens, so the retry loop in
:func:`generate_unique_alias` is a backstop; the storage unique constraint
on ``email_aliases.alias`` stays the final arbiter.
"""
import string
import inspect
import logging
import secrets
from typing import Awaitable, Callable, Union

from .exceptions import AliasExhaustionError

logger = logging.getLogger("alias_vault.aliases")

ALIAS_ALPHABET = string.ascii_lowercase + string.digits
DEFAULT_ALIAS_LENGTH = 12
DEFAULT_MAX_ATTEMPTS = 10

ExistsFn = Callable[[str], Union[bool, Awaitable[bool]]]


def generate_alias(length: int = DEFAULT_ALIAS_LENGTH) -> str:
    """Return a random alias token of ``length`` characters."""
    if length < 1:
        raise ValueError("alias length must be positive")
    return "".join(secrets.choice(ALIAS_ALPHABET) for _ in range(length))


async def generate_unique_alias(
    exists_fn: ExistsFn,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    length: int = DEFAULT_ALIAS_LENGTH,
) -> str:
    """Generate an alias token not reported as in use by ``exists_fn``.

    Args:
        exists_fn: Read-only "alias in use" check; may be a plain function
            or a coroutine function (e.g. a repository query).
        max_attempts: Consecutive collisions tolerated before giving up.
        length: Token length.

    Returns:
        A token for which ``exists_fn`` returned False.

    Raises:
        AliasExhaustionError: After ``max_attempts`` consecutive collisions.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    for attempt in range(1, max_attempts + 1):
        token = generate_alias(length)
        in_use = exists_fn(token)
        if inspect.isawaitable(in_use):
            in_use = await in_use
        if not in_use:
            return token
        logger.debug("Alias collision on attempt %d/%d", attempt, max_attempts)
    logger.warning("Alias generation exhausted after %d attempts", max_attempts)
    raise AliasExhaustionError(max_attempts)
