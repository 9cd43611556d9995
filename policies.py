# policies.py
from dataclasses import dataclass
from datetime import datetime, timedelta

from code_format import CodeType


@dataclass(frozen=True)
class CodePolicy:
    features: tuple[str, ...]
    lifetime: timedelta
    max_uses: int

    def expires_at(self, issued_at: datetime) -> datetime:
        return issued_at + self.lifetime


POLICIES: dict[CodeType, CodePolicy] = {
    CodeType.DEMO: CodePolicy(features=("quiz",), lifetime=timedelta(days=7), max_uses=1),
    CodeType.PROMO: CodePolicy(features=("quiz", "guides"), lifetime=timedelta(days=30), max_uses=1),
    CodeType.LAUNCH: CodePolicy(features=("all",), lifetime=timedelta(days=90), max_uses=1),
    CodeType.CUSTOMER: CodePolicy(features=("all",), lifetime=timedelta(days=365), max_uses=1),
    # Influencer codes are meant to be shared.
    CodeType.INFLUENCER: CodePolicy(features=("all",), lifetime=timedelta(days=730), max_uses=5),
}

_missing = set(CodeType) - set(POLICIES)
if _missing:
    raise RuntimeError(f"no policy for code types: {sorted(t.value for t in _missing)}")


def policy_for(code_type: CodeType) -> CodePolicy:
    return POLICIES[CodeType(code_type)]
