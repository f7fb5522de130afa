"""
进度守卫仓储 - 基于唯一约束的一次性认领
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from domain.common.exceptions import GuardContention
from domain.payment.repository import ProgressGuardRepository
from infrastructure.models.payment import ProgressGuardModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyProgressGuardRepository(ProgressGuardRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def claim(self, claim_token: str, claim_kind: str) -> None:
        try:
            async with self.session.begin_nested():
                self.session.add(ProgressGuardModel(claim_token=claim_token, claim_kind=claim_kind))
                await self.session.flush()
        except IntegrityError as exc:
            logger.info("progress_guard_contended", claim_token=claim_token, claim_kind=claim_kind)
            raise GuardContention(claim_token) from exc
        logger.info("progress_guard_claimed", claim_token=claim_token, claim_kind=claim_kind)
