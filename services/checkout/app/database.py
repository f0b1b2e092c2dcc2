"""
Checkout Service — DB 接続

本番は postgresql+asyncpg。ローカル実行とテストは sqlite+aiosqlite。

SQLite では各トランザクションを BEGIN IMMEDIATE で開始し、
書き込みロックを最初に取る。これで同時チェックアウト同士が
DB ロック上で直列化され、条件付き UPDATE の勝者が必ず一つになる。
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    engine = create_async_engine(database_url, echo=echo)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _disable_driver_begin(dbapi_connection, connection_record):
            # ドライバ側の暗黙 BEGIN を止め、下の begin フックで発行する
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
