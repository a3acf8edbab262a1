import logging
from types import SimpleNamespace

import psycopg
import pytest

import tenantdb.db.pool as pool_module
from tenantdb.db.pool import ConnectionPool


class FakeDiag:
    def __init__(self, sqlstate=None, message_primary=None, message_detail=None, message_hint=None,
                 statement_position=None):
        self.sqlstate = sqlstate
        self.message_primary = message_primary
        self.message_detail = message_detail
        self.message_hint = message_hint
        self.statement_position = statement_position


class FakeDatabaseError(psycopg.errors.SyntaxError):
    """psycopg error carrying server diagnostics without a server."""

    def __init__(self, message, *, sqlstate="42601", detail=None, hint=None, position=None):
        super().__init__(message)
        self._fake_diag = FakeDiag(
            sqlstate=sqlstate,
            message_primary=message,
            message_detail=detail,
            message_hint=hint,
            statement_position=None if position is None else str(position),
        )

    @property
    def diag(self):
        return self._fake_diag


class FakeServer:
    """
    Just enough PostgreSQL for the unit tests: transactions buffer their
    effects until COMMIT, the schema_version ledger is emulated, session
    settings live on each connection.
    """

    def __init__(self, database="testdb"):
        self.database = database
        self.rules = []
        self.statements = []
        self.ledger_exists = False
        self.ledger = []
        self.effects = []
        self.next_pid = 100

    def fail_on(self, fragment, error):
        self.rules.append((fragment, error))

    def respond_to(self, fragment, rows):
        self.rules.append((fragment, rows))

    def sql_log(self, pid=None):
        return [sql for statement_pid, sql, _ in self.statements if pid is None or statement_pid == pid]

    def handle(self, conn, sql, params):
        self.statements.append((conn.info.backend_pid, sql, params))
        for fragment, action in self.rules:
            if fragment in sql:
                if isinstance(action, BaseException):
                    if conn.in_tx:
                        conn.aborted = True
                    raise action
                if callable(action):
                    return action(conn, sql, params)
                return action

        text = " ".join(sql.split())
        upper = text.upper()
        if upper == "BEGIN":
            conn.in_tx, conn.aborted, conn.pending, conn.pending_effects = True, False, [], []
            return None
        if upper == "COMMIT":
            if conn.aborted:
                conn.status_override = "ROLLBACK"
            else:
                for version, description in conn.pending:
                    self._record(version, description)
                self.effects.extend(conn.pending_effects)
            conn.in_tx, conn.pending, conn.pending_effects = False, [], []
            conn.local_settings.clear()
            return None
        if upper == "ROLLBACK":
            conn.in_tx, conn.aborted, conn.pending, conn.pending_effects = False, False, [], []
            conn.local_settings.clear()
            return None
        if upper.startswith("SET TRANSACTION ISOLATION LEVEL"):
            conn.isolation = text[len("SET TRANSACTION ISOLATION LEVEL "):]
            return None
        if "current_database()" in text:
            return [{"db_name": self.database}]
        if "set_config(" in text:
            name, value, is_local = params
            (conn.local_settings if is_local else conn.settings)[name] = value
            return [{"set_config": value}]
        if "current_setting(" in text:
            name = params[0]
            return [{"identity": conn.local_settings.get(name, conn.settings.get(name))}]
        if upper.startswith("RESET "):
            conn.settings.pop(text[len("RESET "):], None)
            return None
        if "information_schema.tables" in text:
            return [{"exists": self.ledger_exists}]
        if "CREATE TABLE IF NOT EXISTS" in upper and "SCHEMA_VERSION" in upper:
            self.ledger_exists = True
            return None
        if upper.startswith("INSERT INTO") and "SCHEMA_VERSION" in upper:
            version, description = params
            if conn.in_tx:
                conn.pending.append((version, description))
            else:
                self._record(version, description)
            return None
        if upper.startswith("SELECT VERSION, APPLIED_AT"):
            return [{"version": v, "applied_at": None, "description": d} for v, d in self.ledger]
        if upper.startswith("SELECT VERSION FROM"):
            return [{"version": v} for v, _ in self.ledger]

        if conn.in_tx:
            conn.pending_effects.append(text)
        else:
            self.effects.append(text)
        return None

    def _record(self, version, description):
        if version not in {v for v, _ in self.ledger}:
            self.ledger.append((version, description))

    @property
    def recorded_versions(self):
        return [v for v, _ in self.ledger]


class FakeCursor:
    def __init__(self, conn):
        self._conn = conn
        self._rows = None
        self.description = None
        self.rowcount = -1
        self.statusmessage = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def execute(self, query, params=None):
        if self._conn.closed:
            raise psycopg.OperationalError("the connection is closed")
        rows = self._conn.server.handle(self._conn, query, params)
        self._rows = rows
        self.description = None if rows is None else [("column",)]
        self.rowcount = len(rows) if rows is not None else 0
        self.statusmessage = self._conn.status_override or (query.split()[0].upper() if query.split() else "")
        self._conn.status_override = None

    async def fetchone(self):
        return self._rows[0] if self._rows else None

    async def fetchall(self):
        return list(self._rows or [])


class FakeConnection:
    def __init__(self, server, pid):
        self.server = server
        self.info = SimpleNamespace(backend_pid=pid)
        self.closed = False
        self.broken = False
        self.settings = {}
        self.local_settings = {}
        self.in_tx = False
        self.aborted = False
        self.status_override = None
        self.pending = []
        self.pending_effects = []
        self.isolation = None

    def cursor(self):
        return FakeCursor(self)

    async def close(self):
        self.closed = True


class FakeAsyncConnectionPool:
    def __init__(self, server, conninfo, *args, **kwargs):
        self.server = server
        self.conninfo = conninfo
        self.kwargs = kwargs
        self.name = kwargs.get("name", "fake_pool")
        self.max_size = kwargs.get("max_size", 4)
        self.configure = kwargs.get("configure")
        self.opened = False
        self.closed = False
        self.idle = []
        self.in_use = 0
        self.max_in_use = 0
        self.discarded = 0
        self.connections = []

    async def open(self, wait=True, timeout=None):
        self.opened = True

    async def close(self):
        self.closed = True
        for conn in self.connections:
            conn.closed = True

    async def getconn(self, timeout=None):
        if self.idle:
            conn = self.idle.pop()
        else:
            self.server.next_pid += 1
            conn = FakeConnection(self.server, self.server.next_pid)
            self.connections.append(conn)
            if self.configure is not None:
                await self.configure(conn)
        self.in_use += 1
        self.max_in_use = max(self.max_in_use, self.in_use)
        return conn

    async def putconn(self, conn):
        self.in_use -= 1
        if conn.closed or conn.broken:
            self.discarded += 1
            return
        conn.local_settings.clear()
        self.idle.append(conn)

    def get_stats(self):
        return {"pool_size": len(self.connections), "pool_available": len(self.idle)}


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)

    @property
    def messages(self):
        return [r.getMessage() for r in self.records]

    def text(self):
        return "\n".join(self.messages)


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def driver_pools(monkeypatch, server):
    created = []

    def factory(conninfo, *args, **kwargs):
        driver = FakeAsyncConnectionPool(server, conninfo, *args, **kwargs)
        created.append(driver)
        return driver

    monkeypatch.setattr(pool_module, "AsyncConnectionPool", factory)
    return created


@pytest.fixture
def make_pool(driver_pools):
    def _make(**kwargs):
        kwargs.setdefault("max_size", 5)
        kwargs.setdefault("min_size", 1)
        kwargs.setdefault("target", {"host": "db.internal", "port": 5432, "database": "testdb"})
        return ConnectionPool("host=db.internal dbname=testdb user=app password=s3cr3t-pw", **kwargs)
    return _make


@pytest.fixture
def db_error():
    return FakeDatabaseError


@pytest.fixture
def captured_logs():
    handler = ListHandler()
    loggers = [
        logging.getLogger(name)
        for name in list(logging.root.manager.loggerDict)
        if name.startswith("tenantdb")
    ]
    previous = {}
    for logger in loggers:
        previous[logger.name] = logger.level
        logger.setLevel(logging.DEBUG)
        logger.addHandler(handler)
    yield handler
    for logger in loggers:
        logger.removeHandler(handler)
        logger.setLevel(previous[logger.name])
