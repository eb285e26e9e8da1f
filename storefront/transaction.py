"""
Storefront — トランザクション調整 (Transaction Coordinator)

在庫引き当て + 注文台帳への書き込み（またはキャンセル時の在庫戻し +
ステータス更新）を 1 つの all-or-nothing な単位として実行する。

    handle = begin()
    try:
        result = fn(handle)   # リポジトリ呼び出しにはすべて handle を渡す
        commit(handle)
    except:
        abort(handle)         # 業務ルール違反も含め、例外はそのまま再送出
        raise

リトライは行わない。期限 (timeout) を指定した場合、超過すると abort して
TransactionTimeout を送出する。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import TransactionTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionContext(Protocol):
    async def begin(self) -> Any: ...

    async def commit(self, handle: Any) -> None: ...

    async def abort(self, handle: Any) -> None: ...


class SqlTransactionContext:
    """AsyncSession 1 つを 1 トランザクションのハンドルとして扱う。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def begin(self) -> AsyncSession:
        session = self.session_factory()
        await session.begin()
        return session

    async def commit(self, handle: AsyncSession) -> None:
        try:
            await handle.commit()
        finally:
            await handle.close()

    async def abort(self, handle: AsyncSession) -> None:
        try:
            await handle.rollback()
        finally:
            await handle.close()


class TransactionCoordinator:
    def __init__(
        self,
        context: TransactionContext,
        timeout: float | None = None,
    ) -> None:
        self.context = context
        self.timeout = timeout or None

    async def with_transaction(self, fn: Callable[[Any], Awaitable[T]]) -> T:
        """
        fn(handle) を 1 トランザクション内で実行する。

        fn 内で送出された例外（NotFound, InsufficientStock など）は
        abort の後そのまま呼び出し元へ伝播する。
        """
        handle = await self.context.begin()
        logger.debug("Transaction begin: %r", handle)

        deadline = asyncio.timeout(self.timeout)
        try:
            async with deadline:
                result = await fn(handle)
        except BaseException as exc:
            await self._abort(handle)
            logger.debug("Transaction aborted: %s", type(exc).__name__)
            if isinstance(exc, TimeoutError) and deadline.expired():
                raise TransactionTimeout(
                    f"Transaction exceeded {self.timeout}s deadline"
                ) from exc
            raise

        try:
            await self.context.commit(handle)
        except BaseException:
            await self._abort(handle)
            raise
        logger.debug("Transaction committed: %r", handle)
        return result

    async def _abort(self, handle: Any) -> None:
        # abort 自体の失敗で元の例外を置き換えない
        try:
            await self.context.abort(handle)
        except Exception:
            logger.exception("Transaction abort failed: %r", handle)
