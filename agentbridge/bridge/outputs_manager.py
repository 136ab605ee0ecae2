"""Per-task directories where the agent drops files to send back."""

import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import List, Union

from agentbridge.claude.stream_processor import IMAGE_EXTENSIONS
from agentbridge.core.models import StrictBaseModel

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Extension -> Feishu im/v1/files file_type
_FEISHU_FILE_TYPES = {
    ".pdf": "pdf",
    ".doc": "doc",
    ".docx": "doc",
    ".xls": "xls",
    ".xlsx": "xls",
    ".ppt": "ppt",
    ".pptx": "ppt",
    ".mp4": "mp4",
    ".opus": "opus",
}


class OutputFile(StrictBaseModel):
    """A deliverable found in an outputs directory."""

    path: str
    file_name: str
    extension: str
    size_bytes: int
    is_image: bool


class OutputsManager:
    """Creates, scans and removes per-task output directories.

    Each task gets its own ``<root>/<chat_id>/<hex>`` directory and only
    ever scans or removes that one.
    """

    def __init__(self, root: PathLike):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def prepare_dir(self, chat_id: str) -> Path:
        """Create a fresh, empty outputs directory for one task in a chat."""
        directory = self._root / chat_id / uuid.uuid4().hex
        directory.mkdir(parents=True)
        return directory

    def scan_outputs(self, directory: PathLike) -> List[OutputFile]:
        """List non-empty regular files directly inside the directory."""
        directory = Path(directory)
        if not directory.is_dir():
            return []

        files: List[OutputFile] = []
        for entry in sorted(os.scandir(directory), key=lambda e: e.name):
            if not entry.is_file():
                continue
            size = entry.stat().st_size
            if size == 0:
                continue
            extension = os.path.splitext(entry.name)[1].lower()
            files.append(
                OutputFile(
                    path=entry.path,
                    file_name=entry.name,
                    extension=extension,
                    size_bytes=size,
                    is_image=extension in IMAGE_EXTENSIONS,
                )
            )
        return files

    def cleanup(self, directory: PathLike) -> None:
        """Remove one task's directory, and the chat directory once it is empty."""
        directory = Path(directory)
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove outputs directory {directory}: {e}")
            return

        if directory.parent != self._root:
            try:
                directory.parent.rmdir()
            except OSError:
                # Another task of the chat still owns a directory there
                pass

    @staticmethod
    def feishu_file_type(extension: str) -> str:
        """Map a file extension to the upload file_type Feishu expects."""
        return _FEISHU_FILE_TYPES.get(extension.lower(), "stream")
