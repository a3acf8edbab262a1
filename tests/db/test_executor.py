import pytest

from tenantdb.core.errors import ErrorKind, LeaseError, QueryError
from tenantdb.db.executor import QueryExecutor, Statement


@pytest.mark.asyncio
async def test_query_self_acquires_and_releases(make_pool, server):
    pool = make_pool()
    await pool.open()
    server.respond_to("FROM subscriptions", [{"id": 1}, {"id": 2}])
    executor = QueryExecutor(pool)

    result = await executor.query("SELECT id FROM subscriptions WHERE user_id = %s", ["u1"])

    assert result.rows == [{"id": 1}, {"id": 2}]
    assert result.rowcount == 2
    assert result.first() == {"id": 1}
    assert result.scalar() == 1
    assert result.duration_ms >= 0
    assert pool.in_use == 0
    assert server.statements[-1][2] == ("u1",)


@pytest.mark.asyncio
async def test_statement_without_result_set(make_pool):
    pool = make_pool()
    await pool.open()

    result = await QueryExecutor(pool).query(Statement("DELETE FROM notifications WHERE id = %s", (3,)))

    assert result.rows == []
    assert result.status == "DELETE"


@pytest.mark.asyncio
async def test_params_given_twice_is_rejected(make_pool):
    pool = make_pool()
    await pool.open()
    with pytest.raises(ValueError):
        await QueryExecutor(pool).query(Statement("SELECT %s", (1,)), (2,))
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_bound_executor_reuses_lease(make_pool, server):
    pool = make_pool()
    await pool.open()
    lease = await pool.acquire()
    bound = QueryExecutor(pool).bind(lease)

    await bound.query("SELECT 1")
    await bound.query("SELECT 2")

    assert bound.lease is lease
    assert pool.in_use == 1
    assert server.sql_log(lease.backend_pid) == ["SELECT 1", "SELECT 2"]
    await pool.release(lease)

    with pytest.raises(LeaseError):
        await bound.query("SELECT 3")


@pytest.mark.asyncio
async def test_driver_error_is_wrapped(make_pool, server, db_error):
    pool = make_pool()
    await pool.open()
    server.fail_on(
        "SELEC ",
        db_error('syntax error at or near "SELEC"', sqlstate="42601", hint="typo?", position=1),
    )

    with pytest.raises(QueryError) as exc:
        await QueryExecutor(pool).query("SELEC 1")

    error = exc.value
    assert error.code == "DATABASE_ERROR"
    assert error.sqlstate == "42601"
    assert error.position == 1
    assert error.hint == "typo?"
    assert error.info.kind == ErrorKind.DB_SYNTAX
    assert error.to_dict()["details"]["originalError"] == 'syntax error at or near "SELEC"'
    assert pool.in_use == 0


@pytest.mark.asyncio
async def test_constraint_error_keeps_detail(make_pool, server, db_error):
    pool = make_pool()
    await pool.open()
    server.fail_on(
        "INSERT INTO users",
        db_error(
            'duplicate key value violates unique constraint "users_email_key"',
            sqlstate="23505",
            detail="Key (email)=(a@b.co) already exists.",
        ),
    )

    with pytest.raises(QueryError) as exc:
        await QueryExecutor(pool).query("INSERT INTO users (email) VALUES (%s)", ("a@b.co",))

    assert exc.value.code == "DATABASE_ERROR"
    assert exc.value.detail == "Key (email)=(a@b.co) already exists."
    assert exc.value.info.kind == ErrorKind.DB_CONSTRAINT
    assert exc.value.position is None


@pytest.mark.asyncio
async def test_secret_parameters_never_reach_the_log(make_pool, captured_logs):
    pool = make_pool()
    await pool.open()

    await QueryExecutor(pool).query(
        "UPDATE users SET password = %s, api_token = %s WHERE email = %s",
        ("hunter2", "tok-123", "alice@example.com"),
    )
    await QueryExecutor(pool).query("ALTER ROLE app PASSWORD 'hunter2'")

    text = captured_logs.text()
    assert "Query executed" in text
    assert "alice@example.com" in text
    assert "hunter2" not in text
    assert "tok-123" not in text


@pytest.mark.asyncio
async def test_failed_query_log_is_sanitized(make_pool, server, captured_logs, db_error):
    pool = make_pool()
    await pool.open()
    server.fail_on("UPDATE users", db_error("permission denied for table users", sqlstate="42501"))

    with pytest.raises(QueryError):
        await QueryExecutor(pool).query("UPDATE users SET password = %s WHERE id = %s", ("hunter2", 1))

    text = captured_logs.text()
    assert "Query failed" in text
    assert "42501" in text
    assert "hunter2" not in text
