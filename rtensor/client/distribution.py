"""
Random distributions for RemoteDevice.random().
"""

import math
from dataclasses import dataclass, field
from typing import Dict


@dataclass(frozen=True)
class Distribution:
    """A sampling distribution. Build one with the classmethods."""
    kind: str
    params: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def default(cls) -> 'Distribution':
        """Uniform on [0, 1)."""
        return cls.uniform(0.0, 1.0)

    @classmethod
    def uniform(cls, low: float, high: float) -> 'Distribution':
        low, high = _finite('low', low), _finite('high', high)
        if not low < high:
            raise ValueError(f"uniform() needs low < high, got low={low}, high={high}")
        return cls('uniform', {'low': low, 'high': high})

    @classmethod
    def normal(cls, mean: float = 0.0, std: float = 1.0) -> 'Distribution':
        mean, std = _finite('mean', mean), _finite('std', std)
        if std < 0:
            raise ValueError(f"normal() needs std >= 0, got {std}")
        return cls('normal', {'mean': mean, 'std': std})

    @classmethod
    def bernoulli(cls, p: float) -> 'Distribution':
        p = _finite('p', p)
        if not 0.0 <= p <= 1.0:
            raise ValueError(f"bernoulli() needs 0 <= p <= 1, got {p}")
        return cls('bernoulli', {'p': p})

    def to_params(self) -> dict:
        """Request params for the 'random' opcode."""
        return {'distribution': self.kind, **self.params}

    def __repr__(self):
        args = ', '.join(f"{k}={v}" for k, v in self.params.items())
        return f"Distribution.{self.kind}({args})"


def _finite(name: str, value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Distribution parameter {name} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise ValueError(f"Distribution parameter {name} must be finite, got {value}")
    return value
