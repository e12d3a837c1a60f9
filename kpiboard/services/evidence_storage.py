"""
Evidence file storage on the local filesystem.

Stored name: ``<epoch ms>-<secure original name>`` under
``EVIDENCE_UPLOAD_DIR``; the returned URL is ``EVIDENCE_URL_PREFIX/<name>``
and is the only thing the KPI document keeps.
"""

from __future__ import annotations

import logging
import os
import time

from flask import current_app
from werkzeug.utils import secure_filename

from kpiboard.core.exceptions import EvidenceStorageError

logger = logging.getLogger(__name__)


def evidence_dir() -> str:
    return current_app.config["EVIDENCE_UPLOAD_DIR"]


def save_evidence_file(stream, filename: str | None) -> str:
    """Write ``stream`` to storage and return its public URL.

    ``stream`` is anything with ``save(path)`` (werkzeug FileStorage) or
    ``read()``. Raises EvidenceStorageError on I/O failure.
    """
    safe = secure_filename(filename or "") or "evidence"
    stored = f"{int(time.time() * 1000)}-{safe}"
    directory = evidence_dir()
    path = os.path.join(directory, stored)

    try:
        os.makedirs(directory, exist_ok=True)
        if hasattr(stream, "save"):
            stream.save(path)
        else:
            with open(path, "wb") as fh:
                fh.write(stream.read())
    except OSError as exc:
        logger.exception("Evidence write failed for %s", safe)
        raise EvidenceStorageError(f"Could not store evidence file '{safe}'") from exc

    logger.info("Stored evidence %s", stored, extra={"action": "evidence:stored"})
    return f"{current_app.config['EVIDENCE_URL_PREFIX'].rstrip('/')}/{stored}"
