"""Repository for runtime options."""
import logging
from typing import Dict, Optional

from sqlalchemy import select, text

from notetree.models.db_models import DBOption
from notetree.models.schema import utc_now
from notetree.storage.base import Repository, transaction

logger = logging.getLogger(__name__)

HISTORY_SNAPSHOT_TIME_INTERVAL = "history_snapshot_time_interval"


class OptionRepository(Repository):
    """Key/value options stored in the `options` table.

    Options are read on every use so changes made by another process take
    effect without a restart.
    """

    def seed(self, defaults: Dict[str, object]) -> None:
        """Insert defaults for options that have no row yet."""
        now = utc_now().replace(tzinfo=None)
        with transaction(self.session_factory, "seed_options") as session:
            for name, value in defaults.items():
                # INSERT OR IGNORE keeps values set by earlier runs
                session.execute(
                    text(
                        "INSERT OR IGNORE INTO options (name, value, modified_at) "
                        "VALUES (:name, :value, :modified_at)"
                    ),
                    {"name": name, "value": str(value), "modified_at": now},
                )

    def get(self, name: str) -> Optional[str]:
        """Get an option value, None when unset."""
        with self._read("get_option") as session:
            return session.scalar(select(DBOption.value).where(DBOption.name == name))

    def get_int(self, name: str, default: int) -> int:
        """Get an integer option, falling back to `default` when unset or invalid."""
        raw = self.get(name)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Option {name}={raw!r} is not an integer, using {default}")
            return default

    def set(self, name: str, value: object) -> None:
        """Create or overwrite an option."""
        with transaction(self.session_factory, "set_option") as session:
            db_option = session.get(DBOption, name)
            if db_option is None:
                session.add(DBOption(name=name, value=str(value)))
            else:
                db_option.value = str(value)
