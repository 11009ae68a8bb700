#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
import logging
import sys
from os import environ
from pathlib import Path
from typing import Optional, Union

import structlog

_ROOT = "ga4ai"
_log_file: Optional[Path] = None

_shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
]


def get_log_file() -> Path:
    state = Path(environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))
    return state / _ROOT / f"{_ROOT}.log"


def configure(enable_json_logging: bool = False, to_file: bool = True):
    """Route both structlog and stdlib loggers through one handler"""
    global _log_file

    renderer = (
        structlog.processors.JSONRenderer()
        if enable_json_logging
        else structlog.dev.ConsoleRenderer(colors=not to_file)
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    if to_file:
        _log_file = get_log_file()
        _log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(_log_file)
    else:
        # stdout belongs to the stdio transport and CLI output
        _log_file = None
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)

    structlog.configure(
        processors=_shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def set_level(level: Union[str, int]):
    if isinstance(level, str):
        level = level.upper()
    logging.getLogger().setLevel(level)
    logging.getLogger(_ROOT).setLevel(level)


def logger(name: Optional[str] = None) -> logging.Logger:
    if name is None:
        return logging.getLogger(_ROOT)
    if name.startswith(_ROOT):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT}.{name}")
