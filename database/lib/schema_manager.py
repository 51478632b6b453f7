"""Database schema management module.

This module handles schema versioning for the document table. Schema files
live in ``database/schema/vN.py`` and each defines a ``schema`` dict with the
tables, indexes and triggers of that version plus optional raw migrations.
"""
import importlib
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schema'

def build_table_sql(table: Dict[str, Any]) -> str:
    """Render the CREATE TABLE statement for a table definition."""
    columns: List[str] = []
    constraints: List[str] = []

    for col in table['columns']:
        col_def = f"{col['name']} {col['type']}"
        if col.get('primary_key'):
            constraints.append(f"PRIMARY KEY ({col['name']})")
        elif col.get('unique'):
            constraints.append(f"UNIQUE ({col['name']})")
        if 'default' in col:
            col_def += f" DEFAULT {col['default']}"
        if col.get('nullable') is False:
            col_def += " NOT NULL"
        columns.append(col_def)

    if isinstance(table.get('primary_key'), list):
        constraints.append(f"PRIMARY KEY ({', '.join(table['primary_key'])})")

    return f"CREATE TABLE IF NOT EXISTS {table['name']} ({', '.join(columns + constraints)})"

def build_index_sql(table_name: str, index: Dict[str, Any]) -> str:
    """Render the CREATE INDEX statement for an index definition."""
    unique = 'UNIQUE ' if index.get('unique') else ''
    using = f" USING {index['using']}" if 'using' in index else ''
    where = f" WHERE {index['where']}" if 'where' in index else ''
    return (
        f"CREATE {unique}INDEX IF NOT EXISTS {index['name']} "
        f"ON {table_name}{using} ({', '.join(index['columns'])}){where}"
    )

class SchemaManager:
    """Manages database schema versioning and migrations."""

    def __init__(self, pool, schema_dir: Optional[Path] = None) -> None:
        """Initialize schema manager.

        Args:
            pool: Database connection pool
            schema_dir: Directory containing schema version files
        """
        self.pool = pool
        self._schema_dir = Path(schema_dir) if schema_dir else SCHEMA_DIR
        self.current_version = 0
        self._schema_files: Dict[int, Dict[str, Any]] = {}

    async def initialize(self) -> None:
        """Create the version table and apply any pending schema versions.

        Raises:
            DatabaseSchemaError: If no schema files are found or a migration fails
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute('''
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INT8 PRIMARY KEY,
                        applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                ''')
                row = await conn.fetchrow(
                    'SELECT version FROM schema_version ORDER BY version DESC LIMIT 1'
                )
                self.current_version = row['version'] if row else 0

            schema_files = self.load_schema_files()
            if not schema_files:
                raise DatabaseSchemaError("No valid schema files found in schema directory")

            await self._apply_migrations(schema_files)

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}")

    def load_schema_files(self) -> Dict[int, Dict[str, Any]]:
        """Load all schema version files.

        Returns:
            Dict mapping version numbers to schema definitions

        Raises:
            DatabaseSchemaError: If a file's declared version does not match its name
        """
        schema_files = {}

        if not self._schema_dir.exists():
            return schema_files

        for file in self._schema_dir.glob('v*.py'):
            try:
                version = int(file.stem[1:])
            except ValueError:
                logger.warning(f"Invalid schema filename: {file}")
                continue

            module = importlib.import_module(f"database.schema.{file.stem}")
            schema = getattr(module, 'schema', None)
            if schema is None:
                raise DatabaseSchemaError(f"Schema file {file} missing 'schema' definition")
            if schema['version'] != version:
                raise DatabaseSchemaError(
                    f"Schema version mismatch in {file}: "
                    f"Expected v{version}, got v{schema['version']}"
                )
            schema_files[version] = schema

        self._schema_files = dict(sorted(schema_files.items()))
        return self._schema_files

    async def _apply_migrations(self, schema_files: Dict[int, Dict[str, Any]]) -> None:
        latest_version = max(schema_files.keys())
        if self.current_version >= latest_version:
            logger.info("Schema is up to date")
            return

        logger.info(f"Updating schema from version {self.current_version} to {latest_version}")

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                if self.current_version == 0:
                    await self._create_fresh_schema(conn, schema_files[latest_version])
                    return

                for version in range(self.current_version + 1, latest_version + 1):
                    if version not in schema_files:
                        continue
                    for migration in schema_files[version].get('migrations', []):
                        await conn.execute(migration)
                    await conn.execute(
                        'INSERT INTO schema_version (version) VALUES ($1)', version
                    )
                    logger.info(f"Successfully migrated to version {version}")

    async def _create_fresh_schema(self, conn, schema: Dict[str, Any]) -> None:
        for table in schema.get('tables', []):
            await conn.execute(build_table_sql(table))
            logger.info(f"Created table {table['name']}")
            for index in table.get('indexes', []):
                await conn.execute(build_index_sql(table['name'], index))
                logger.info(f"Created index {index['name']} on {table['name']}")

        for trigger in schema.get('triggers', []):
            await self._create_trigger(conn, trigger)

        await conn.execute('INSERT INTO schema_version (version) VALUES ($1)', schema['version'])
        logger.info(f"Successfully created fresh schema version {schema['version']}")

    async def _create_trigger(self, conn, trigger: Dict[str, Any]) -> None:
        await conn.execute(f'''
            CREATE OR REPLACE FUNCTION {trigger['function_name']}()
            RETURNS TRIGGER
            AS $${trigger['function_body']}$$
            LANGUAGE plpgsql;
        ''')
        await conn.execute(f"DROP TRIGGER IF EXISTS {trigger['name']} ON {trigger['table']}")
        await conn.execute(f'''
            CREATE TRIGGER {trigger['name']}
            {trigger['timing']} {trigger['event']} ON {trigger['table']}
            FOR EACH ROW
            EXECUTE FUNCTION {trigger['function_name']}();
        ''')
        logger.info(f"Created trigger {trigger['name']} on {trigger['table']}")
