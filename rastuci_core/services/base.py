"""
基础服务类
"""
from typing import TypeVar, Generic, Optional, Dict, Any
from dataclasses import dataclass
from abc import ABC
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rastuci_core.utils.logger import get_logger
from rastuci_core.utils.errors import RastuciException, InternalServerError
from rastuci_core.database import DatabaseManager, get_db_manager

T = TypeVar('T')

logger = get_logger(__name__)


@dataclass
class ServiceResult(Generic[T]):
    """服务执行结果"""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> "ServiceResult[T]":
        """成功结果"""
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def error(
        cls,
        error: str,
        error_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> "ServiceResult[T]":
        """失败结果"""
        return cls(success=False, error=error, error_code=error_code, metadata=metadata)


class BaseService(ABC):
    """基础服务类"""

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or get_db_manager()
        self.logger = get_logger(self.__class__.__name__)

    async def execute_with_transaction(
        self,
        operation,
        *args,
        **kwargs
    ) -> Any:
        """在事务中执行操作（全部成功才提交）"""
        try:
            async with self.db_manager.get_transaction() as session:
                return await operation(session, *args, **kwargs)
        except RastuciException:
            raise
        except Exception as e:
            self.logger.error("Transaction operation failed", exc_info=True)
            raise InternalServerError(
                code="TRANSACTION_FAILED",
                detail=f"Database transaction failed: {str(e)}"
            )

    async def execute_with_session(
        self,
        operation,
        *args,
        **kwargs
    ) -> Any:
        """使用数据库会话执行操作"""
        try:
            async with self.db_manager.get_session() as session:
                return await operation(session, *args, **kwargs)
        except RastuciException:
            raise
        except Exception as e:
            self.logger.error("Session operation failed", exc_info=True)
            raise InternalServerError(
                code="SESSION_OPERATION_FAILED",
                detail=f"Database operation failed: {str(e)}"
            )


class RepositoryMixin:
    """仓储混入类 - 提供常用的数据库操作"""

    async def get_by_id(
        self,
        session: AsyncSession,
        model_class,
        record_id: Any
    ) -> Optional[Any]:
        """根据ID获取记录"""
        return await session.get(model_class, record_id)

    async def get_by_field(
        self,
        session: AsyncSession,
        model_class,
        field_name: str,
        field_value: Any
    ) -> Optional[Any]:
        """根据字段获取记录"""
        stmt = select(model_class).where(getattr(model_class, field_name) == field_value)
        result = await session.execute(stmt)
        return result.scalars().first()

    async def update(
        self,
        session: AsyncSession,
        instance: Any,
        data: Dict[str, Any]
    ) -> Any:
        """更新记录"""
        for key, value in data.items():
            if hasattr(instance, key):
                setattr(instance, key, value)

        await session.flush()
        return instance
