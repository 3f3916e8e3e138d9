"""
Persistence of QC result documents
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from ..core.errors import AbortRun
from ..schemas.qc import QcResultsFile, utcnow

logger = structlog.get_logger(__name__)


def default_output_path(model: str, directory: Path = Path('.')) -> Path:
    """<model with / and : replaced by ->.qc.json"""
    safe = model.replace('/', '-').replace(':', '-')
    return Path(directory) / f"{safe}.qc.json"


def load_results(path: Path) -> Optional[QcResultsFile]:
    """Load a document; None when the file does not exist"""
    path = Path(path)
    if not path.is_file():
        return None
    try:
        with path.open('r', encoding='utf-8') as f:
            document = QcResultsFile.model_validate(json.load(f))
    except (ValueError, ValidationError) as e:
        raise AbortRun(f"Results file {path} is not a readable QC document: {e}") from e
    logger.info("Results file loaded", path=str(path), quantizations=len(document.results))
    return document


def save_results(document: QcResultsFile, path: Path) -> None:
    """Write the document atomically so an interrupted write never truncates it"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    document.updated_at = utcnow()
    _write_atomic(path, document.model_dump_json(indent=2).encode('utf-8'))
    logger.debug("Results file saved", path=str(path))


def check_compatible(document: QcResultsFile, model: str, suite_name: str) -> None:
    """A document can only be resumed for the same model and question suite"""
    if document.model_name.lower() != model.lower():
        raise AbortRun(
            f"Results file belongs to model '{document.model_name}', not '{model}'; choose another output file"
        )
    if document.test_suite_name != suite_name:
        raise AbortRun(
            f"Results file was produced with suite '{document.test_suite_name}', not '{suite_name}'"
        )


def restore_results(path: Path, snapshot: Optional[bytes]) -> None:
    """Put a results file back the way it was; None removes a file that did not exist before"""
    path = Path(path)
    if snapshot is None:
        if path.exists():
            path.unlink()
        logger.warning("Results file removed, it did not exist before the run", path=str(path))
        return
    _write_atomic(path, snapshot)
    logger.warning("Results file restored to its state before the run", path=str(path))


def _write_atomic(path: Path, data: bytes) -> None:
    """Temp file in the same directory, fsync, then rename over the target"""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
