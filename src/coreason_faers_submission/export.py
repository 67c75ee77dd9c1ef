# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""File-writing capability injected into the batch service."""

from pathlib import Path
from typing import Protocol, Union

from coreason_faers_submission.config import FaersConfig
from coreason_faers_submission.utils.logger import logger


class ExportStore(Protocol):
    """Anything that can persist a generated document and say where it went."""

    def write(self, filename: str, content: str) -> str:
        """Persist ``content`` under ``filename`` and return its location."""
        ...

    def read(self, location: str) -> str:
        """Return the content previously written to ``location``."""
        ...


class LocalExportStore:
    """Writes exports to a directory on the local filesystem."""

    def __init__(self, directory: Union[str, Path] = FaersConfig.DEFAULT_EXPORT_DIR) -> None:
        self.directory = Path(directory)

    def write(self, filename: str, content: str) -> str:
        if Path(filename).name != filename:
            raise ValueError(f"Export filename must not contain a path: {filename}")
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / filename
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(content, encoding="utf-8")
        tmp_path.replace(path)
        logger.info(f"Wrote {len(content)} chars to {path}")
        return str(path)

    def read(self, location: str) -> str:
        return Path(location).read_text(encoding="utf-8")
