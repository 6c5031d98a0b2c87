import psycopg2
from psycopg2.pool import ThreadedConnectionPool
from contextlib import contextmanager
from settings import settings
import psycopg2.extras
_pool: ThreadedConnectionPool | None = None


def init_pool():
    """
    Initialize the PostgreSQL connection pool.
    Called lazily on first use, or at app startup when the postgres store is configured.
    """
    psycopg2.extras.register_uuid()
    global _pool
    if _pool is None:
        if not settings.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set.")
        _pool = ThreadedConnectionPool(
            minconn=1,
            maxconn=10,
            dsn=settings.DATABASE_URL,
            connect_timeout=5,
        )


def close_pool():
    """
    Gracefully close all pooled connections.
    """
    global _pool
    if _pool:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn():
    """
    Provides a transactional DB connection.
    Auto-commits on success, rolls back on error.
    Row locks taken inside are released by the commit/rollback.
    """
    if _pool is None:
        init_pool()

    conn = _pool.getconn()

    try:
        with conn.cursor() as cur:
            cur.execute("SET statement_timeout = %s;", (f"{int(settings.DB_STATEMENT_TIMEOUT_MS)}ms",))
            cur.execute("SET idle_in_transaction_session_timeout = '10000ms';")
            cur.execute("SET application_name = 'billing_api';")

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        _pool.putconn(conn)
