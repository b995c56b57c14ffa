"""
Connection handling helpers for SQLAlchemy-backed components.

Components accept either an AsyncEngine (each call opens its own
connection) or an AsyncConnection (the caller owns the transaction).
These helpers hide the difference.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for execute() calls.

    Args:
        conn: Database connection or engine
        transactional: Wrap the block in a transaction (begin) instead of a
                       bare connection (connect). Only applies to engines;
                       an AsyncConnection is yielded as-is and the caller
                       manages its transaction.

    Example:
        >>> async with execute_with_connection(self.conn) as conn:
        ...     await conn.execute(query, params)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


@asynccontextmanager
async def transaction_scope(
    conn: AsyncConnection | AsyncEngine,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection inside a transaction that commits on normal exit.

    Engines get a fresh ``begin()`` block. A connection already inside a
    transaction is joined; otherwise a transaction is started on it.
    Any exception, cancellation included, rolls the transaction back.
    """
    if isinstance(conn, AsyncEngine):
        async with conn.begin() as connection:
            yield connection
    elif conn.in_transaction():
        yield conn
    else:
        async with conn.begin():
            yield conn
