"""Core input models and the engine's exception hierarchy."""

from .errors import (  # noqa: F401
    InputError,
    InsufficientDataError,
    InsufficientStudies,
    MetaAnalysisError,
    NumericDegeneracyError,
)
from .models import (  # noqa: F401
    BinaryStudy,
    ContinuousStudy,
    EffectMeasure,
    Study,
    StudyEffect,
    StudyInfo,
)
