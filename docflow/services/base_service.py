from typing import Optional, Any
from abc import ABC, abstractmethod

from docflow.repositories.base_repository import BaseRepository
from docflow.core.exceptions import AppError
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class BaseService(ABC):
    """Base class for application services.

    ``execute`` validates input, runs the service and wraps anything that
    is not already an ``AppError``.
    """

    def __init__(self, repository: Optional[BaseRepository] = None):
        self.repository = repository
        self.logger = LOGGER

    async def execute(self, *args, **kwargs) -> Any:
        """Validate then run.

        Raises:
            AppError: If execution fails
        """
        try:
            self.validate(*args, **kwargs)
            return await self.run(*args, **kwargs)
        except AppError:
            raise
        except Exception as e:
            self.logger.error(
                f"Service execution failed: {str(e)}",
                exc_info=True,
                extra={"service": self.__class__.__name__}
            )
            raise AppError(f"Service execution failed: {str(e)}", original_error=e)

    def validate(self, *args, **kwargs):
        """Override to reject bad input with ``ValidationError``."""
        pass

    @abstractmethod
    async def run(self, *args, **kwargs) -> Any:
        pass
