"""
Logging setup for threadkeep.

Model libraries are noisy (progress bars, tokenizer warnings); they are
silenced unless THREADKEEP_VERBOSE is set. Every open store also writes an
operations log of its mutations and background jobs.
"""

import logging
import os
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG = "threadkeep-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3

_QUIET_ENV = {
    "HF_HUB_DISABLE_PROGRESS_BARS": "1",
    "HF_HUB_DISABLE_TELEMETRY": "1",
    "TRANSFORMERS_VERBOSITY": "error",
    "TOKENIZERS_PARALLELISM": "false",
}
_LIBRARY_LOGGERS = ("transformers", "sentence_transformers", "httpx", "urllib3", "openai", "anthropic")

# Must run before sentence-transformers is first imported
if not os.environ.get("THREADKEEP_VERBOSE"):
    for _key, _value in _QUIET_ENV.items():
        os.environ.setdefault(_key, _value)


def configure_quiet_mode(quiet: bool = True):
    """Silence model-library warnings and loggers below ERROR."""
    if not quiet:
        return
    os.environ.update(_QUIET_ENV)
    warnings.filterwarnings("ignore")
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)


def _has_stderr_handler(logger: logging.Logger) -> bool:
    return any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in logger.handlers
    )


def enable_debug_mode():
    """Send DEBUG records from threadkeep and its providers to stderr."""
    warnings.filterwarnings("default")
    for key in ("HF_HUB_DISABLE_PROGRESS_BARS", "TRANSFORMERS_VERBOSITY"):
        os.environ.pop(key, None)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    if not _has_stderr_handler(root):
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s [%(threadName)s] %(message)s",
            datefmt="%H:%M:%S",
        ))
        root.addHandler(console)

    for name in ("threadkeep", *_LIBRARY_LOGGERS):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path) -> RotatingFileHandler:
    """
    Attach a rotating operations log for one store.

    Records INFO and above from every ``threadkeep.*`` logger into
    ``{store_path}/threadkeep-ops.log``, whether or not --verbose is on.

    Returns:
        The handler, for remove_ops_log() on close
    """
    store_path = Path(store_path)
    store_path.mkdir(parents=True, exist_ok=True)
    ops = RotatingFileHandler(
        str(store_path / OPS_LOG),
        maxBytes=OPS_LOG_MAX_BYTES,
        backupCount=OPS_LOG_BACKUPS,
    )
    ops.setLevel(logging.INFO)
    ops.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    ))

    package_logger = logging.getLogger("threadkeep")
    package_logger.addHandler(ops)
    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    return ops


def remove_ops_log(handler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    if handler is None:
        return
    logging.getLogger("threadkeep").removeHandler(handler)
    handler.close()
