"""Default validation provider: the deterministic rule engine."""

from services.extraction.schema import ExtractedDocument
from services.shared.config import Settings
from services.validation.base import ValidationProvider
from services.validation.models import ValidationResult
from services.validation.rules import RuleValidationEngine


class RulesValidationProvider(ValidationProvider):
    """Runs RuleValidationEngine in-process. Always available."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.engine = RuleValidationEngine(settings)

    @property
    def provider_name(self) -> str:
        return "rules"

    def is_available(self) -> bool:
        return True

    async def validate(self, document: ExtractedDocument) -> ValidationResult:
        return self.engine.validate(document)
