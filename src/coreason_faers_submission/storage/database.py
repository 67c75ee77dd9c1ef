# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Engine and session ownership for the relational store."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from coreason_faers_submission.config import FaersConfig
from coreason_faers_submission.storage.schema import Base
from coreason_faers_submission.utils.logger import logger


class Database:
    """
    An explicitly constructed connection pool plus session factory.

    One instance is created by the application entry point and passed to every
    component that needs persistence.
    """

    def __init__(self, url: str = FaersConfig.DEFAULT_DATABASE_URL, echo: bool = False) -> None:
        parsed = make_url(url)
        connect_args: dict[str, Any] = {}
        if parsed.get_backend_name() == "sqlite":
            # Sessions are used from the poller and submission threads.
            connect_args["check_same_thread"] = False
            if parsed.database and parsed.database != ":memory:":
                Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        elif parsed.get_backend_name().startswith("postgresql"):
            connect_args["options"] = "-c timezone=utc"

        self.url = url
        self.engine = create_engine(url, echo=echo, pool_pre_ping=True, connect_args=connect_args)
        self.session_factory = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def create_all(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(self.engine)
        logger.debug(f"Schema ensured on {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Open a session wrapped in one transaction; commits on success, rolls back on error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
