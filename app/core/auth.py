from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    OPERATOR = "operator"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str

    @property
    def manual_source_id(self) -> str:
        return f"manual:{self.subject}"
