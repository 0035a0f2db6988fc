import os
import tempfile
from pathlib import Path
from typing import Union

from ..logging import get_logger

logger = get_logger(__name__)


def atomic_write(target_path: Union[str, Path], data: Union[str, bytes]):
    """
    Writes data to a file atomically via a temporary file.
    Prevents a truncated artifact if the process is interrupted.
    """
    target = Path(target_path)
    target.parent.mkdir(parents=True, exist_ok=True)

    # Same directory as the target so os.replace stays on one device
    with tempfile.NamedTemporaryFile(
        dir=target.parent,
        delete=False,
        mode='w' if isinstance(data, str) else 'wb',
        suffix=".tmp",
        **({"encoding": "utf-8"} if isinstance(data, str) else {}),
    ) as tf:
        tf.write(data)
        temp_name = tf.name

    try:
        os.replace(temp_name, target)
    except Exception as e:
        logger.error(f"Failed to perform atomic write to {target}: {e}")
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise


def write_artifact(target_path: Union[str, Path], text: str) -> Path:
    """
    Writes operator output (policy documents, recovered secrets, exported
    identities) to disk, replacing any previous file.
    """
    target = Path(target_path)
    atomic_write(target, text)
    logger.info(f"Wrote {target}")
    return target
