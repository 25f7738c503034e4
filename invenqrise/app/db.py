from contextlib import contextmanager

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .config import settings


def _make_pool(conninfo: str, min_size: int, max_size: int, name: str) -> ConnectionPool:
    # Opened lazily so importing the app (tests, scripts) never touches the database.
    return ConnectionPool(
        conninfo=conninfo,
        min_size=min_size,
        max_size=max_size,
        kwargs={"row_factory": dict_row},
        name=name,
        open=False,
    )


# The app role is subject to row-level security and only sees the company set
# by set_company_context(). The admin role serves auth lookups that run before
# a company is known.
_pool = _make_pool(settings.db_url, settings.db_pool_min, settings.db_pool_max, "invenqrise-app")
_admin_pool = _make_pool(settings.db_admin_url, settings.db_admin_pool_min, settings.db_admin_pool_max, "invenqrise-admin")


@contextmanager
def _borrow(pool: ConnectionPool):
    if pool.closed:
        pool.open()
    # Commits on clean exit, rolls back on error, then hands the connection back.
    with pool.connection() as conn:
        yield conn


def get_conn():
    return _borrow(_pool)


def get_admin_conn():
    return _borrow(_admin_pool)


def close_pools() -> None:
    for pool in (_pool, _admin_pool):
        if not pool.closed:
            pool.close()


def set_company_context(conn, company_id: str):
    """Scope every following statement in this transaction to one company (RLS)."""
    with conn.cursor() as cur:
        # SET cannot take bind parameters; set_config() can.
        cur.execute("SELECT set_config('app.current_company_id', %s::text, true)", (company_id,))
