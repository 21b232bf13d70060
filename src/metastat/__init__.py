"""Statistical meta-analysis engine for systematic reviews."""

__version__ = "0.1.0"

from .core.errors import (  # noqa: F401
    InputError,
    InsufficientDataError,
    MetaAnalysisError,
    NumericDegeneracyError,
)
from .core.models import BinaryStudy, ContinuousStudy, EffectMeasure, StudyEffect  # noqa: F401
from .meta.analyzer import MetaAnalyzer  # noqa: F401
