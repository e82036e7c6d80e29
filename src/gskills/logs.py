"""
Structured logging capability injected into every gskills component.

Components never reach for a module-level logger. They accept ``logger=`` in
their constructor and default to :class:`NoOpLogger`, so library callers stay
silent unless they opt in. :class:`StdLogger` bridges onto :mod:`logging`.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol


class Logger(Protocol):
    def debug(self, msg: str, **fields: Any) -> None:
        ...

    def info(self, msg: str, **fields: Any) -> None:
        ...

    def warn(self, msg: str, **fields: Any) -> None:
        ...

    def error(self, msg: str, err: BaseException | None = None, **fields: Any) -> None:
        ...


class NoOpLogger:
    def debug(self, msg: str, **fields: Any) -> None:
        pass

    def info(self, msg: str, **fields: Any) -> None:
        pass

    def warn(self, msg: str, **fields: Any) -> None:
        pass

    def error(self, msg: str, err: BaseException | None = None, **fields: Any) -> None:
        pass


def _format(msg: str, fields: dict[str, Any]) -> str:
    if not fields:
        return msg
    rendered = " ".join(f"{k}={v}" for k, v in fields.items())
    return f"{msg} {rendered}"


class StdLogger:
    def __init__(self, name: str = "gskills", *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(name)

    def debug(self, msg: str, **fields: Any) -> None:
        self._logger.debug(_format(msg, fields))

    def info(self, msg: str, **fields: Any) -> None:
        self._logger.info(_format(msg, fields))

    def warn(self, msg: str, **fields: Any) -> None:
        self._logger.warning(_format(msg, fields))

    def error(self, msg: str, err: BaseException | None = None, **fields: Any) -> None:
        if err is not None:
            fields = {**fields, "error": err}
        self._logger.error(_format(msg, fields))

