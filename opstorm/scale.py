import logging
import os

from opstorm.errors import ConfigurationError

SCALE_ENV_VAR = "VOLUME_OPS_SCALE"
DEFAULT_VOLUME_OPS_SCALE = 30

logger = logging.getLogger(__name__)


def resolve_scale(override=None, default=DEFAULT_VOLUME_OPS_SCALE, environ=None):
    """Resolve how many volumes the storm should exercise

    Args:
        override: Explicit override value; when None or blank the
            VOLUME_OPS_SCALE environment variable is consulted
        default: Count used when no override is set or it is empty
        environ: Mapping used instead of os.environ (optional)

    Returns:
        Positive integer volume count

    Raises:
        ConfigurationError: if the override is not an integer or is not positive
    """
    if override is None or str(override).strip() == "":
        environ = os.environ if environ is None else environ
        override = environ.get(SCALE_ENV_VAR)

    if override is None or str(override).strip() == "":
        logger.debug(f"No scale override set, using default {default}")
        return default

    try:
        scale = int(str(override).strip())
    except ValueError:
        raise ConfigurationError(f"{SCALE_ENV_VAR} must be an integer, got {override!r}")

    if scale <= 0:
        raise ConfigurationError(f"{SCALE_ENV_VAR} must be positive, got {scale}")
    return scale
