"""
Exception logging helpers that never raise, including for exception groups
coming out of task groups (the tunnel relay runs two tasks per connection).
"""

import logging


def _safe_str(obj) -> str:
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _sub_exceptions(exception) -> list:
    try:
        return list(getattr(exception, "exceptions", None) or [])
    except Exception:
        return []


def format_exception_message(exception: BaseException) -> str:
    """Format an exception, listing sub-exceptions of a group."""
    if exception is None:
        return "None"
    main_str = _safe_str(exception)
    subs = _sub_exceptions(exception)
    if not subs:
        return main_str or type(exception).__name__
    joined = "; ".join(f"{type(s).__name__}: {_safe_str(s)}" for s in subs)
    return f"{main_str} (Sub-exceptions: {joined})"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its traceback, one record per sub-exception for
    exception groups. Logging failures are swallowed so that callers on an
    error path are never interrupted by them.
    """
    try:
        subs = _sub_exceptions(exception)
        if not subs:
            logger.log(
                level,
                f"{prefix} Exception: {format_exception_message(exception)}",
                exc_info=exception if exception is not None else False,
            )
            return

        logger.log(
            level,
            f"{prefix} Exception with {len(subs)} sub-exceptions: {_safe_str(exception)}",
        )
        for i, sub_exc in enumerate(subs):
            logger.log(
                level,
                f"{prefix} Sub-exception {i + 1}: {type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                exc_info=sub_exc,
            )
    except Exception:
        try:
            logger.log(logging.ERROR, f"{prefix} Exception logging failed")
        except Exception:
            pass
