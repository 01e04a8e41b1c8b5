import logging
from pathlib import Path
from typing import List, Optional, Union

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def resolve_level(level: Optional[Union[int, str]]) -> int:
    if isinstance(level, int):
        return level
    named = logging.getLevelName(str(level or 'INFO').strip().upper())
    return named if isinstance(named, int) else logging.INFO


def setup_logging(
    level: Optional[Union[int, str]] = logging.INFO,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """Configure root logging once for the process.

    Later calls are no-ops when the root logger already has handlers. With
    ``log_file`` set, records go to that file as well as stderr.
    """
    if logging.getLogger().handlers:
        return

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding='utf-8'))
    logging.basicConfig(level=resolve_level(level), format=log_format or DEFAULT_FORMAT, handlers=handlers)
