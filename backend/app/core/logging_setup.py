import logging
import sys
from pathlib import Path

from app.core.config import settings

_log_dir = Path(settings.log_dir)
_log_dir.mkdir(parents=True, exist_ok=True)

# Configuração básica de logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(_log_dir / 'server.log', encoding='utf-8')
    ]
)

logger = logging.getLogger('medpass')


def get_logger(name: str) -> logging.Logger:
    """Logger filho de 'medpass' (ex.: get_logger('billing') -> medpass.billing)."""
    return logger.getChild(name)
