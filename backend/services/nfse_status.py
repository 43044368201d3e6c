from typing import Dict, Iterable, Optional
from models.models import NFSeStatus
from config import NFSE_TERMINAL_STATUSES, NFSE_STATUS_ALIASES


class StatusVocabulary:
    """Maps the provider's status strings onto NFSeStatus and decides which are final."""

    def __init__(self, terminal: Iterable[str] = NFSE_TERMINAL_STATUSES,
                 aliases: Optional[Dict[str, str]] = None):
        self.terminal = frozenset(s.strip().lower() for s in terminal)
        self.aliases = {k.strip().lower(): v.strip().lower()
                        for k, v in (NFSE_STATUS_ALIASES if aliases is None else aliases).items()}

    @staticmethod
    def normalize(status: Optional[str]) -> str:
        return (status or NFSeStatus.processando.value).strip().lower()

    def is_terminal(self, status: Optional[str]) -> bool:
        s = self.normalize(status)
        return s in self.terminal or self.aliases.get(s) in self.terminal

    def classify(self, status: Optional[str]) -> NFSeStatus:
        s = self.normalize(status)
        s = self.aliases.get(s, s)
        try:
            return NFSeStatus(s)
        except ValueError:
            pass
        if s.startswith("erro"):
            return NFSeStatus.erro
        # An unknown status the provider declared final is treated as a failure
        return NFSeStatus.erro if self.is_terminal(status) else NFSeStatus.processando
