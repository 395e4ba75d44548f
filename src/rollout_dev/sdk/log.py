import logging
import os


class CustomFormatter(logging.Formatter):
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(asctime)s::%(name)s::%(levelname)s: %(message)s (%(filename)s:%(lineno)d)"

    FORMATS = {
        logging.DEBUG: grey + fmt + reset,
        logging.INFO: green + fmt + reset,
        logging.WARNING: yellow + fmt + reset,
        logging.ERROR: red + fmt + reset,
        logging.CRITICAL: bold_red + fmt + reset,
    }

    def format(self, record: logging.LogRecord):
        log_fmt = self.FORMATS.get(record.levelno)
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


# For StreamHandlers / console
class VerboseColorfulFormatter(CustomFormatter):
    def format(self, record):
        return super().format(record)


# For user-facing console lines: message only, colour by level
class UserFormatter(CustomFormatter):
    fmt = "%(message)s"

    FORMATS = {
        logging.DEBUG: CustomFormatter.grey + fmt + CustomFormatter.reset,
        logging.INFO: fmt,
        logging.WARNING: CustomFormatter.yellow + fmt + CustomFormatter.reset,
        logging.ERROR: CustomFormatter.red + fmt + CustomFormatter.reset,
        logging.CRITICAL: CustomFormatter.bold_red + fmt + CustomFormatter.reset,
    }


def _level_from_env(default: int) -> int:
    level_name = os.environ.get("ROLLOUT_DEV_LOG_LEVEL")
    if not level_name:
        return default
    level = logging.getLevelName(level_name.upper())
    return level if isinstance(level, int) else default


def get_default_logger(
    name: str,
    level: int = logging.INFO,
    propagate: bool = False,
    verbose: bool = True,
):
    logger = logging.getLogger(name)
    logger.setLevel(_level_from_env(level))
    # get_default_logger is called at import time of every module; avoid
    # stacking handlers when a module is reloaded
    if not any(getattr(h, "_rollout_dev_handler", False) for h in logger.handlers):
        console_log_handler = logging.StreamHandler()
        console_log_handler.setFormatter(
            VerboseColorfulFormatter() if verbose else UserFormatter()
        )
        console_log_handler._rollout_dev_handler = True
        logger.addHandler(console_log_handler)
    logger.propagate = propagate
    return logger
