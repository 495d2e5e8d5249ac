"""
LevelDB wrapper used as the ledger's durable key/value layer.

Atomicity of an operation rests on `write_batch`: LevelDB applies a batch
entirely or not at all.
"""
import plyvel
import logging
from typing import Optional
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class DB:
    def __init__(self, db_path: str, create_if_missing: bool = True,
                 write_buffer_size: int = 4 * 1024 * 1024,
                 max_open_files: int = 1000,
                 compression: Optional[str] = 'snappy'):
        """
        Open (or create) the database.

        Args:
            db_path: Path to database directory
            create_if_missing: Create database if it doesn't exist
            write_buffer_size: Size of write buffer
            max_open_files: Maximum number of open files
            compression: 'snappy' or None
        """
        self.path = db_path
        try:
            self._db = plyvel.DB(
                db_path,
                create_if_missing=create_if_missing,
                write_buffer_size=write_buffer_size,
                max_open_files=max_open_files,
                compression=compression,
            )
            self._closed = False
            logger.info(f"Ledger database opened at {db_path}")
        except plyvel.Error as e:
            logger.error(f"Failed to open database at {db_path}: {e}")
            raise

    @classmethod
    def from_config(cls, config) -> 'DB':
        """Open the database described by a DatabaseConfig."""
        return cls(
            config.path,
            write_buffer_size=config.write_buffer_size,
            max_open_files=config.max_open_files,
            compression=config.compression,
        )

    def _check_open(self):
        if self._closed:
            raise RuntimeError("Database is closed")

    def get(self, key: bytes) -> Optional[bytes]:
        """
        Get value by key.

        Returns None if key doesn't exist.
        """
        self._check_open()
        try:
            return self._db.get(key)
        except plyvel.Error as e:
            logger.error(f"Error getting key {key.hex()[:16]}: {e}")
            raise

    def exists(self, key: bytes) -> bool:
        return self.get(key) is not None

    @contextmanager
    def write_batch(self):
        """
        Context manager for atomic batch writes.

        Nothing is written if the block raises.

        Example:
            with db.write_batch() as batch:
                batch.put(b'key1', b'value1')
                batch.put(b'key2', b'value2')
        """
        self._check_open()
        batch = self._db.write_batch(transaction=True)
        try:
            yield batch
        except Exception:
            batch.clear()
            raise
        else:
            try:
                batch.write()
            except plyvel.Error as e:
                logger.error(f"Error in batch write: {e}")
                raise

    def close(self):
        """Close the database."""
        if not self._closed:
            self._db.close()
            self._closed = True
            logger.info(f"Ledger database closed ({self.path})")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
