from abc import ABC, abstractmethod
from dataclasses import dataclass

from hybrid_categorizer.models import TokenUsage


@dataclass(frozen=True)
class ClassifierResponse:
    category: str
    tokens: TokenUsage
    confidence: float | None = None


class ClassifierGateway(ABC):
    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    def classify(self, description: str) -> ClassifierResponse:
        """
        Return one category label from the fixed taxonomy.
        Raises ClassifierUnavailable or InvalidClassifierResponse.
        """
        pass
