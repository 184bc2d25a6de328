"""Unit of work over an AsyncSession.

Business operations that must be all-or-nothing (inventory debit/restore,
order creation) run inside a ``UnitOfWork``. Units nest: an inner unit joins
the outermost one and only the outermost commits or rolls back, so a ledger
debit called from settlement commits together with the order rows.

    async with UnitOfWork(db) as uow:
        ...
        # commit on clean exit, rollback on exception
"""

from sqlalchemy.ext.asyncio import AsyncSession

_DEPTH_KEY = "unit_of_work_depth"


class UnitOfWork:
    def __init__(self, session: AsyncSession):
        self.session = session
        self._outermost = False
        self._active = False

    @property
    def is_outermost(self) -> bool:
        return self._outermost

    async def begin(self) -> "UnitOfWork":
        if self._active:
            raise RuntimeError("UnitOfWork already started")
        depth = self.session.info.get(_DEPTH_KEY, 0)
        self._outermost = depth == 0
        self.session.info[_DEPTH_KEY] = depth + 1
        self._active = True
        if not self.session.in_transaction():
            await self.session.begin()
        return self

    def _release(self) -> bool:
        if not self._active:
            return False
        self._active = False
        depth = self.session.info.get(_DEPTH_KEY, 1) - 1
        if depth <= 0:
            self.session.info.pop(_DEPTH_KEY, None)
        else:
            self.session.info[_DEPTH_KEY] = depth
        return True

    async def commit(self) -> None:
        if self._release() and self._outermost:
            await self.session.commit()

    async def abort(self) -> None:
        if self._release() and self._outermost:
            await self.session.rollback()

    async def __aenter__(self) -> "UnitOfWork":
        return await self.begin()

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            await self.abort()
        else:
            await self.commit()
        return False
