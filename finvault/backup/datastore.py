"""
Application data store handlers for backup operations.

The backup engine only needs a narrow contract from the application database:
- list every collection name
- stream the documents of a collection, optionally only those created or
  modified since a watermark
- bulk insert documents / delete all documents of a collection
- upsert documents by key (applying incremental archives)

Supports:
- MongoDataStore: MongoDB via pymongo (collections are collections)
- SQLDataStore: any SQLAlchemy database (tables are collections)
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from pymongo import InsertOne, MongoClient, ReplaceOne
from pymongo.errors import PyMongoError
from sqlalchemy import MetaData, Table, and_, create_engine, inspect, or_, select
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from .errors import DataStoreError


logger = logging.getLogger(__name__)

DEFAULT_TIMESTAMP_FIELDS = ('createdAt', 'updatedAt', 'created_at', 'updated_at')
UPSERT_BATCH_SIZE = 500


class DataStore:
    """
    Base class for data store handlers.

    Subclasses implement the operations the backup engine relies on.
    """

    def __init__(self, timestamp_fields: Iterable[str] = DEFAULT_TIMESTAMP_FIELDS,
                 exclude: Iterable[str] = ()):
        self.timestamp_fields = tuple(timestamp_fields)
        self.exclude = set(exclude)

    def list_collections(self) -> List[str]:
        raise NotImplementedError

    def find_documents(self, name: str, since: Optional[datetime] = None) -> Iterator[Dict[str, Any]]:
        """
        Stream documents of a collection.

        Args:
            name: Collection name
            since: If given, only documents whose creation or modification
                timestamp is >= since

        Yields:
            Documents as dicts
        """
        raise NotImplementedError

    def insert_documents(self, name: str, documents: List[Dict[str, Any]]) -> int:
        raise NotImplementedError

    def upsert_documents(self, name: str, documents: List[Dict[str, Any]]) -> int:
        """
        Write documents, replacing any existing document with the same key.

        Used to apply incremental archives on top of a restored full backup.
        """
        raise NotImplementedError

    def delete_documents(self, name: str) -> int:
        raise NotImplementedError

    def close(self):
        pass


class MongoDataStore(DataStore):
    """
    Handler for a MongoDB application database.
    """

    def __init__(self, uri: str = None, database: str = None, client: MongoClient = None,
                 server_selection_timeout_ms: int = 10000, **kwargs):
        """
        Args:
            uri: MongoDB connection URI
            database: Database name (default: the database named in the URI)
            client: Existing MongoClient to reuse instead of connecting
            server_selection_timeout_ms: Timeout for finding a usable server
        """
        super().__init__(**kwargs)

        try:
            self.client = client or MongoClient(uri, serverSelectionTimeoutMS=server_selection_timeout_ms)
            if database:
                self.db = self.client[database]
            else:
                self.db = self.client.get_default_database()
        except (PyMongoError, ValueError) as e:
            raise DataStoreError(f"Failed to connect to MongoDB: {e}")

    def list_collections(self) -> List[str]:
        try:
            names = self.db.list_collection_names()
        except PyMongoError as e:
            raise DataStoreError(f"Failed to list collections: {e}")

        return sorted(
            name for name in names
            if not name.startswith('system.') and name not in self.exclude
        )

    def _watermark_query(self, since: Optional[datetime]) -> Dict[str, Any]:
        if since is None:
            return {}
        return {'$or': [{field: {'$gte': since}} for field in self.timestamp_fields]}

    def find_documents(self, name: str, since: Optional[datetime] = None) -> Iterator[Dict[str, Any]]:
        try:
            for document in self.db[name].find(self._watermark_query(since)):
                yield document
        except PyMongoError as e:
            raise DataStoreError(f"Failed to read collection {name}: {e}")

    def insert_documents(self, name: str, documents: List[Dict[str, Any]]) -> int:
        if not documents:
            return 0
        try:
            result = self.db[name].insert_many(documents)
            return len(result.inserted_ids)
        except PyMongoError as e:
            raise DataStoreError(f"Failed to insert into {name}: {e}")

    def upsert_documents(self, name: str, documents: List[Dict[str, Any]]) -> int:
        if not documents:
            return 0
        operations = [
            ReplaceOne({'_id': document['_id']}, document, upsert=True)
            if '_id' in document else InsertOne(document)
            for document in documents
        ]
        try:
            self.db[name].bulk_write(operations, ordered=True)
            return len(operations)
        except PyMongoError as e:
            raise DataStoreError(f"Failed to upsert into {name}: {e}")

    def delete_documents(self, name: str) -> int:
        try:
            return self.db[name].delete_many({}).deleted_count
        except PyMongoError as e:
            raise DataStoreError(f"Failed to clear collection {name}: {e}")

    def close(self):
        self.client.close()


class SQLDataStore(DataStore):
    """
    Handler for a relational application database.

    Tables are reflected at runtime, so no schema is hard-coded. A table's
    watermark columns are whichever configured timestamp fields it has;
    a table without any is skipped by incremental reads.
    """

    def __init__(self, url: str = None, engine=None, **kwargs):
        """
        Args:
            url: SQLAlchemy database URL
            engine: Existing SQLAlchemy engine to reuse instead of url
        """
        super().__init__(**kwargs)

        try:
            self.engine = engine if engine is not None else create_engine(url)
        except (SQLAlchemyError, ValueError) as e:
            raise DataStoreError(f"Failed to create database engine: {e}")

        self._tables = {}

    def _table(self, name: str) -> Table:
        if name not in self._tables:
            try:
                self._tables[name] = Table(name, MetaData(), autoload_with=self.engine)
            except NoSuchTableError:
                raise DataStoreError(f"Table does not exist: {name}")
            except SQLAlchemyError as e:
                raise DataStoreError(f"Failed to reflect table {name}: {e}")
        return self._tables[name]

    def list_collections(self) -> List[str]:
        try:
            names = inspect(self.engine).get_table_names()
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to list tables: {e}")

        return sorted(name for name in names if name not in self.exclude)

    def find_documents(self, name: str, since: Optional[datetime] = None) -> Iterator[Dict[str, Any]]:
        table = self._table(name)
        statement = select(table)

        if since is not None:
            columns = [table.c[field] for field in self.timestamp_fields if field in table.c]
            if not columns:
                logger.debug(f"Table {name} has no timestamp columns, skipping incremental read")
                return
            statement = statement.where(or_(*[column >= since for column in columns]))

        try:
            with self.engine.connect() as conn:
                for row in conn.execute(statement):
                    yield dict(row._mapping)
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to read table {name}: {e}")

    def insert_documents(self, name: str, documents: List[Dict[str, Any]]) -> int:
        if not documents:
            return 0
        table = self._table(name)
        try:
            with self.engine.begin() as conn:
                conn.execute(table.insert(), documents)
            return len(documents)
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to insert into {name}: {e}")

    def upsert_documents(self, name: str, documents: List[Dict[str, Any]]) -> int:
        """
        Replace rows by primary key: matching rows are deleted and the
        documents inserted in one transaction. A table without a primary
        key falls back to a plain insert.
        """
        if not documents:
            return 0
        table = self._table(name)
        key_columns = list(table.primary_key.columns)

        if not key_columns:
            logger.warning(f"Table {name} has no primary key, inserting without replacement")
            return self.insert_documents(name, documents)

        keyed = [doc for doc in documents if all(col.name in doc for col in key_columns)]

        try:
            with self.engine.begin() as conn:
                if len(key_columns) == 1:
                    column = key_columns[0]
                    values = [doc[column.name] for doc in keyed]
                    for start in range(0, len(values), UPSERT_BATCH_SIZE):
                        batch = values[start:start + UPSERT_BATCH_SIZE]
                        conn.execute(table.delete().where(column.in_(batch)))
                else:
                    for doc in keyed:
                        conn.execute(table.delete().where(
                            and_(*[col == doc[col.name] for col in key_columns])
                        ))
                conn.execute(table.insert(), documents)
            return len(documents)
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to upsert into {name}: {e}")

    def delete_documents(self, name: str) -> int:
        table = self._table(name)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(table.delete())
                return result.rowcount
        except SQLAlchemyError as e:
            raise DataStoreError(f"Failed to clear table {name}: {e}")

    def close(self):
        self.engine.dispose()


def create_data_store(config) -> DataStore:
    """
    Factory function to create the appropriate data store handler.

    Args:
        config: Flask config mapping

    Returns:
        MongoDataStore for mongodb:// URLs, SQLDataStore otherwise

    Raises:
        DataStoreError: If no data store URL is configured
    """
    url = config.get('DATA_STORE_URL')
    if not url:
        raise DataStoreError("DATA_STORE_URL is not configured")

    options = {
        'timestamp_fields': config.get('BACKUP_TIMESTAMP_FIELDS', DEFAULT_TIMESTAMP_FIELDS),
        'exclude': config.get('BACKUP_EXCLUDED_COLLECTIONS', ()),
    }

    if url.startswith(('mongodb://', 'mongodb+srv://')):
        return MongoDataStore(url, database=config.get('DATA_STORE_DATABASE'), **options)
    return SQLDataStore(url, **options)
