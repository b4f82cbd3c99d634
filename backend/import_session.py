import logging
from typing import Optional

from import_errors import NoImportDataError
from image_import import ImportResult


logger = logging.getLogger(__name__)


class ImportSession:
    """Holds the outcome of the most recent import for one plugin session.

    Single slot: each completed import overwrites the previous result. Layer
    selection requests only use it to check that an import has happened.
    """

    def __init__(self) -> None:
        self._last_result: Optional[ImportResult] = None

    def record_result(self, result: ImportResult) -> None:
        self._last_result = result
        logger.info(
            f"🗂️ Stored import result (mapped={result.mapped}, skipped={result.skipped}, total={result.total_images})"
        )

    def require_last_result(self) -> ImportResult:
        if self._last_result is None:
            raise NoImportDataError()
        return self._last_result

    def clear(self) -> None:
        if self._last_result is not None:
            logger.info("🧹 Cleared stored import result")
        self._last_result = None

    @property
    def last_result(self) -> Optional[ImportResult]:
        return self._last_result
