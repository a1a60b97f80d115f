"""Per-engine dump, restore and restore-test commands.

``ENGINE_STRATEGIES`` maps the closed :class:`DatabaseEngine` enum to one
strategy object per engine.  Strategies only build command strings; the
pipelines run them.  Every credential, database name and path is quoted
before it is interpolated.

Engine        dump file                         restore
──────────    ──────────────────────────────    ───────────────────────────
PostgreSQL    pg-dump-<db>-<ts>.dmp             pg_restore --clean
              pg-dump-all-<ts>.gz               gunzip -c | psql
MySQL         mysql-dump-<db>-<ts>.dmp          mysql < file
              mysql-dump-all-<ts>.gz            gunzip -c | mysql
MariaDB       mariadb-dump-<db>-<ts>.dmp        mariadb < file
              mariadb-dump-all-<ts>.gz          gunzip -c | mariadb
MongoDB       mongo-dump-<db>-<ts>.tar.gz       mongorestore --gzip --archive
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from urllib.parse import quote as url_quote

from dockyard.backup.models import DatabaseEngine, DatabaseResource
from dockyard.core.errors import ValidationError
from dockyard.remote.shell import quote

RESTORE_TEST_DATABASE = "restore_test"


class EngineStrategy(ABC):
    """Command templates for one database engine."""

    engine: DatabaseEngine
    file_prefix: str
    default_image: str

    def dump_filename(self, database: str | None, timestamp: int) -> str:
        """File name of a dump; ``database=None`` means all databases."""
        if database is None:
            return f"{self.file_prefix}-dump-all-{timestamp}.gz"
        return f"{self.file_prefix}-dump-{database}-{timestamp}.dmp"

    def test_image(self, db: DatabaseResource) -> str:
        if db.image:
            return db.image
        if db.version:
            return f"{self.default_image.split(':', 1)[0]}:{db.version}"
        return self.default_image

    def test_environment(self, db: DatabaseResource) -> dict[str, str]:
        return {}

    def test_run_command(self, db: DatabaseResource, container: str) -> str:
        env = " ".join(f"-e {quote(f'{k}={v}')}" for k, v in self.test_environment(db).items())
        parts = ["docker run -d", f"--name {quote(container)}", env, quote(self.test_image(db))]
        return " ".join(p for p in parts if p)

    @abstractmethod
    def dump_command(
        self, db: DatabaseResource, database: str | None, location: str, *, data_only: bool = False
    ) -> str:
        """Dump *database* (all databases when ``None``) to *location* on the database host."""
        ...

    @abstractmethod
    def restore_command(
        self, db: DatabaseResource, database: str | None, location: str, *, data_only: bool = False
    ) -> str:
        """Restore *location* into the live database container.

        ``data_only`` keeps the existing schema instead of dropping and
        recreating objects.
        """
        ...

    @abstractmethod
    def ready_check(self, db: DatabaseResource, container: str) -> str:
        """Command that exits 0 once the test container accepts connections."""
        ...

    @abstractmethod
    def test_restore_command(self, db: DatabaseResource, container: str, location: str) -> str:
        ...

    @abstractmethod
    def verify_command(self, db: DatabaseResource, container: str) -> str:
        ...


class PostgresStrategy(EngineStrategy):
    engine = DatabaseEngine.POSTGRESQL
    file_prefix = "pg"
    default_image = "postgres:16-alpine"

    @staticmethod
    def _user(db: DatabaseResource) -> str:
        return db.user or "postgres"

    def _exec(self, db: DatabaseResource, container: str, *, interactive: bool = False) -> str:
        flags = "-i " if interactive else ""
        env = f"-e {quote(f'PGPASSWORD={db.password}')} " if db.password else ""
        return f"docker exec {flags}{env}{quote(container)}"

    def dump_command(self, db, database, location, *, data_only=False):
        exec_ = self._exec(db, db.container_name)
        user = quote(self._user(db))
        if database is None:
            scope = " --data-only" if data_only else ""
            return f"{exec_} pg_dumpall{scope} --username {user} | gzip > {quote(location)}"
        scope = "--data-only " if data_only else ""
        return (
            f"{exec_} pg_dump --format=custom {scope}--no-acl --no-owner --username {user} "
            f"{quote(database)} > {quote(location)}"
        )

    def restore_command(self, db, database, location, *, data_only=False):
        exec_ = self._exec(db, db.container_name, interactive=True)
        user = quote(self._user(db))
        if location.endswith(".gz"):
            return f"gunzip -c {quote(location)} | {exec_} psql --username {user} -d postgres"
        mode = "--data-only --disable-triggers" if data_only else "--clean --if-exists"
        return (
            f"{exec_} pg_restore --username {user} --dbname {quote(database or db.database_name or 'postgres')} "
            f"{mode} --no-owner --no-acl < {quote(location)}"
        )

    def test_environment(self, db):
        return {
            "POSTGRES_PASSWORD": db.password or "postgres",
            "POSTGRES_DB": RESTORE_TEST_DATABASE,
        }

    def ready_check(self, db, container):
        return f"docker exec {quote(container)} pg_isready -U postgres >/dev/null 2>&1"

    def test_restore_command(self, db, container, location):
        target = f"docker exec -i {quote(container)}"
        if location.endswith(".gz"):
            return f"gunzip -c {quote(location)} | {target} psql -U postgres -d {RESTORE_TEST_DATABASE}"
        if location.endswith(".dmp"):
            return (
                f"{target} pg_restore -U postgres -d {RESTORE_TEST_DATABASE} "
                f"--no-owner --no-privileges < {quote(location)}"
            )
        return f"cat {quote(location)} | {target} psql -U postgres -d {RESTORE_TEST_DATABASE}"

    def verify_command(self, db, container):
        query = "SELECT count(*) FROM information_schema.tables WHERE table_schema = 'public';"
        return f"docker exec {quote(container)} psql -U postgres -d {RESTORE_TEST_DATABASE} -c {quote(query)}"


class MysqlStrategy(EngineStrategy):
    engine = DatabaseEngine.MYSQL
    file_prefix = "mysql"
    default_image = "mysql:8.0"
    client = "mysql"
    dump_binary = "mysqldump"
    admin_binary = "mysqladmin"
    env_prefix = "MYSQL"

    @staticmethod
    def _password(db: DatabaseResource) -> str:
        return db.root_password or "root"

    def _auth(self, db: DatabaseResource) -> str:
        return f"-u root -p{quote(self._password(db))}"

    def dump_command(self, db, database, location, *, data_only=False):
        exec_ = f"docker exec {quote(db.container_name)} {self.dump_binary} {self._auth(db)}"
        if data_only:
            exec_ += " --no-create-info"
        if database is None:
            return (
                f"{exec_} --all-databases --single-transaction --quick --lock-tables=false --compress "
                f"| gzip > {quote(location)}"
            )
        return f"{exec_} --single-transaction --quick --routines --events {quote(database)} > {quote(location)}"

    def restore_command(self, db, database, location, *, data_only=False):
        client = f"docker exec -i {quote(db.container_name)} {self.client} {self._auth(db)}"
        if location.endswith(".gz"):
            return f"gunzip -c {quote(location)} | {client}"
        return f"{client} {quote(database or db.database_name)} < {quote(location)}"

    def test_environment(self, db):
        return {
            f"{self.env_prefix}_ROOT_PASSWORD": self._password(db),
            f"{self.env_prefix}_DATABASE": RESTORE_TEST_DATABASE,
        }

    def ready_check(self, db, container):
        return (
            f"docker exec {quote(container)} {self.admin_binary} ping -h 127.0.0.1 "
            f"{self._auth(db)} --silent >/dev/null 2>&1"
        )

    def test_restore_command(self, db, container, location):
        client = f"docker exec -i {quote(container)} {self.client} {self._auth(db)}"
        if location.endswith(".gz"):
            return f"gunzip -c {quote(location)} | {client} {RESTORE_TEST_DATABASE}"
        return f"{client} {RESTORE_TEST_DATABASE} < {quote(location)}"

    def verify_command(self, db, container):
        return (
            f"docker exec {quote(container)} {self.client} {self._auth(db)} "
            f"-e {quote('SHOW TABLES;')} {RESTORE_TEST_DATABASE}"
        )


class MariadbStrategy(MysqlStrategy):
    engine = DatabaseEngine.MARIADB
    file_prefix = "mariadb"
    default_image = "mariadb:11"
    client = "mariadb"
    dump_binary = "mariadb-dump"
    admin_binary = "mariadb-admin"
    env_prefix = "MARIADB"


class MongoStrategy(EngineStrategy):
    engine = DatabaseEngine.MONGODB
    file_prefix = "mongo"
    default_image = "mongo:7"

    def dump_filename(self, database, timestamp):
        return f"mongo-dump-{database or 'all'}-{timestamp}.tar.gz"

    @staticmethod
    def uri(db: DatabaseResource) -> str:
        user = db.root_user or db.user
        password = db.root_password or db.password
        if user and password:
            return f"mongodb://{url_quote(user, safe='')}:{url_quote(password, safe='')}@localhost:27017"
        return "mongodb://localhost:27017"

    def _auth(self, db: DatabaseResource) -> str:
        auth = f"--uri={quote(self.uri(db))}"
        if db.root_password or db.password:
            auth = f"--authenticationDatabase=admin {auth}"
        return auth

    def dump_command(self, db, database, location, *, data_only=False):
        select = f" --db {quote(database)}" if database else ""
        return (
            f"docker exec {quote(db.container_name)} mongodump {self._auth(db)}{select} "
            f"--gzip --archive > {quote(location)}"
        )

    def restore_command(self, db, database, location, *, data_only=False):
        drop = "" if data_only else " --drop"
        return (
            f"docker exec -i {quote(db.container_name)} mongorestore {self._auth(db)} "
            f"--gzip --archive{drop} < {quote(location)}"
        )

    def ready_check(self, db, container):
        return f"docker exec {quote(container)} mongosh --quiet --eval {quote('db.adminCommand({ping: 1})')} >/dev/null 2>&1"

    def test_restore_command(self, db, container, location):
        return f"docker exec -i {quote(container)} mongorestore --gzip --archive < {quote(location)}"

    def verify_command(self, db, container):
        return f"docker exec {quote(container)} mongosh --quiet --eval {quote('db.adminCommand({listDatabases: 1})')}"


ENGINE_STRATEGIES: dict[DatabaseEngine, EngineStrategy] = {
    DatabaseEngine.POSTGRESQL: PostgresStrategy(),
    DatabaseEngine.MYSQL: MysqlStrategy(),
    DatabaseEngine.MARIADB: MariadbStrategy(),
    DatabaseEngine.MONGODB: MongoStrategy(),
}


def strategy_for(db: DatabaseResource) -> EngineStrategy:
    """Strategy for *db*'s engine, sniffing service database images.

    Raises:
        ValidationError: The engine is unknown or unsupported.
    """
    engine = db.resolved_engine
    if engine is None or engine not in ENGINE_STRATEGIES:
        raise ValidationError("Unsupported database type", field="engine", value=db.image or db.engine)
    return ENGINE_STRATEGIES[engine]


__all__ = [
    "RESTORE_TEST_DATABASE",
    "EngineStrategy",
    "PostgresStrategy",
    "MysqlStrategy",
    "MariadbStrategy",
    "MongoStrategy",
    "ENGINE_STRATEGIES",
    "strategy_for",
]
