"""File transfer engine: uploads, downloads and storage-pressure eviction."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .config import TransferConfig
from .core.errors import (
    DeviceNotConnectedError,
    DispatchError,
    DispatcherBusyError,
    DispatchTimeoutError,
    DownloadError,
    InsufficientStorageError,
    StorageError,
    UploadError,
)
from .core.models import (
    DeviceSession,
    DownloadErrorType,
    FileEntry,
    UploadErrorType,
    UploadOutcome,
    UploadProgress,
)
from .storage import StorageStrategy

LOGGER = logging.getLogger(__name__)

ProgressListener = Callable[[UploadProgress], None]
FinishedListener = Callable[[UploadOutcome], None]


def select_eviction_candidate(
    files: Sequence[FileEntry], current_image: Optional[str]
) -> Optional[FileEntry]:
    """Pick the image to delete when the device runs out of space.

    Only images are eligible and the image on screen is never chosen. The
    oldest known creation time wins; entries without one sort after dated
    entries in listing order, and the name breaks any remaining tie.
    """
    eligible = [
        (index, entry)
        for index, entry in enumerate(files)
        if entry.is_image and entry.name != current_image
    ]
    if not eligible:
        return None

    def sort_key(item: tuple[int, FileEntry]) -> tuple[int, float, int, str]:
        index, entry = item
        if entry.created_at is None:
            return (1, 0.0, index, entry.name)
        return (0, entry.created_at, index, entry.name)

    return min(eligible, key=sort_key)[1]


class FileTransferEngine:
    """Moves files between the host and the device through a storage strategy."""

    def __init__(
        self,
        strategy: StorageStrategy,
        session: DeviceSession,
        *,
        config: Optional[TransferConfig] = None,
        cache_dir: Optional[Path] = None,
    ) -> None:
        self._strategy = strategy
        self._session = session
        self._config = config or TransferConfig()
        self._cache_dir = cache_dir
        self._progress_listeners: List[ProgressListener] = []
        self._finished_listeners: List[FinishedListener] = []
        self._active: Optional[str] = None
        self._cancel_requested = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def strategy(self) -> StorageStrategy:
        return self._strategy

    @property
    def in_progress(self) -> bool:
        return self._active is not None

    @property
    def active_file(self) -> Optional[str]:
        return self._active

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._progress_listeners.append(listener)

    def add_finished_listener(self, listener: FinishedListener) -> None:
        self._finished_listeners.append(listener)

    def cancel(self) -> bool:
        """Ask the running transfer to stop before its next chunk."""

        if self._active is None:
            return False
        LOGGER.info("Cancelling transfer of %s", self._active)
        self._cancel_requested = True
        return True

    async def send_file(self, data: bytes, file_name: str) -> UploadOutcome:
        """Upload ``data`` as ``file_name`` and report the outcome.

        Failures are returned, never raised; every call ends with exactly one
        finished notification.
        """
        if self._active is not None:
            outcome = UploadOutcome(
                file_name,
                False,
                UploadErrorType.UNKNOWN,
                f"Transfer of {self._active} already in progress",
            )
            self._emit_finished(outcome)
            return outcome

        self._active = file_name
        self._cancel_requested = False
        total = len(data)
        last_percent = -1.0

        def on_progress(sent: int) -> None:
            nonlocal last_percent
            percent = 100.0 if total == 0 else min(100.0, sent * 100.0 / total)
            if percent > last_percent:
                last_percent = percent
                self._emit_progress(UploadProgress(file_name, percent))

        try:
            if len(file_name) > self._config.max_filename_length:
                raise UploadError(
                    UploadErrorType.FILENAME_TOO_LONG,
                    f"File name longer than {self._config.max_filename_length} characters",
                )
            on_progress(0)
            await self.free_up_storage(total)
            LOGGER.info(
                "Uploading %s (%d bytes) via %s", file_name, total, self._strategy.describe()
            )
            await self._strategy.write_file(
                data,
                file_name,
                on_progress=on_progress,
                should_cancel=lambda: self._cancel_requested,
            )
            on_progress(total)
            outcome = UploadOutcome(file_name, True)
        except UploadError as exc:
            outcome = UploadOutcome(file_name, False, exc.error_type, str(exc))
        except InsufficientStorageError as exc:
            outcome = UploadOutcome(
                file_name, False, UploadErrorType.INSUFFICIENT_STORAGE, str(exc)
            )
        except DeviceNotConnectedError as exc:
            outcome = UploadOutcome(
                file_name, False, UploadErrorType.CONNECTION_LOST, str(exc)
            )
        except DispatcherBusyError as exc:
            outcome = UploadOutcome(file_name, False, UploadErrorType.UNKNOWN, str(exc))
        except DispatchError as exc:
            outcome = UploadOutcome(
                file_name, False, UploadErrorType.TRANSFER_INTERRUPTED, str(exc)
            )
        except (StorageError, OSError) as exc:
            outcome = UploadOutcome(file_name, False, UploadErrorType.UNKNOWN, str(exc))
        finally:
            self._active = None
            self._cancel_requested = False

        if outcome.success:
            LOGGER.info("Upload of %s finished", file_name)
            await self.refresh()
        else:
            LOGGER.warning(
                "Upload of %s failed (%s): %s",
                file_name,
                outcome.error_type.value,
                outcome.message,
            )
        self._emit_finished(outcome)
        return outcome

    async def get_file(self, file_name: str) -> bytes:
        """Download ``file_name`` and store it in the image cache when configured."""

        if self._active is not None:
            raise DispatcherBusyError(f"Transfer of {self._active} already in progress")

        self._active = file_name
        self._cancel_requested = False
        try:
            data = await self._strategy.read_file(
                file_name, should_cancel=lambda: self._cancel_requested
            )
        except DeviceNotConnectedError as exc:
            raise DownloadError(DownloadErrorType.CONNECTION_LOST, str(exc)) from exc
        except DispatchTimeoutError as exc:
            raise DownloadError(DownloadErrorType.INCOMPLETE, str(exc)) from exc
        except StorageError as exc:
            raise DownloadError(DownloadErrorType.NOT_FOUND, str(exc)) from exc
        finally:
            self._active = None
            self._cancel_requested = False

        if self._cache_dir is not None:
            await asyncio.to_thread(_write_cache, self._cache_dir, file_name, data)
        return data

    async def free_up_storage(self, required: int) -> int:
        """Evict images until ``required`` bytes are free; return evictions made.

        Raises :class:`InsufficientStorageError` when ``required`` exceeds the
        device capacity, when nothing is left to evict, or after the
        configured number of attempts.
        """
        total = await self._strategy.total_space()
        self._session.total_storage = total
        free = await self._strategy.free_space()
        self._session.free_storage = free
        if required > total:
            raise InsufficientStorageError(required, free, total)

        attempts = 0
        while free < required:
            if attempts >= self._config.eviction_attempts:
                raise InsufficientStorageError(required, free, total)
            attempts += 1

            files = await self._strategy.list_files()
            candidate = select_eviction_candidate(files, self._session.current_image)
            if candidate is None:
                raise InsufficientStorageError(required, free, total)

            LOGGER.info(
                "Evicting %s (%d bytes) to make room for %d bytes",
                candidate.name,
                candidate.size,
                required,
            )
            await self._strategy.delete(candidate.name)
            self._session.files = [f for f in files if f.name != candidate.name]
            free = await self._strategy.free_space()
            self._session.free_storage = free

        return attempts

    async def refresh(self) -> List[FileEntry]:
        """Re-read the file list and free space into the session."""

        try:
            self._session.files = await self._strategy.list_files()
            self._session.free_storage = await self._strategy.free_space()
        except (DispatchError, StorageError, OSError) as exc:
            LOGGER.warning("Unable to refresh file list: %s", exc)
        return list(self._session.files)

    def cached_path(self, file_name: str) -> Optional[Path]:
        if self._cache_dir is None:
            return None
        path = _cache_file(self._cache_dir, file_name)
        return path if path is not None and path.is_file() else None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _emit_progress(self, progress: UploadProgress) -> None:
        for listener in list(self._progress_listeners):
            try:
                listener(progress)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Upload progress listener failed")

    def _emit_finished(self, outcome: UploadOutcome) -> None:
        for listener in list(self._finished_listeners):
            try:
                listener(outcome)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Upload finished listener failed")


def _cache_file(cache_dir: Path, file_name: str) -> Optional[Path]:
    # Device file names are flat; only the final path component is kept.
    name = Path(file_name).name
    if not name or name == "..":
        return None
    return cache_dir / name


def _write_cache(cache_dir: Path, file_name: str, data: bytes) -> None:
    path = _cache_file(cache_dir, file_name)
    if path is None:
        return
    cache_dir.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
