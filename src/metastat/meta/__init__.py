"""Meta-analysis engines.

This package computes per-study effect sizes, pools them under fixed or
random-effects models, quantifies heterogeneity, lays out forest plot
data and runs publication bias diagnostics.
"""

from .analyzer import MetaAnalyzer  # noqa: F401
from .effect_sizes import EffectSizeCalculator  # noqa: F401
from .forest_plot import ForestPlotDataBuilder  # noqa: F401
from .heterogeneity import HeterogeneityAssessor  # noqa: F401
from .models import ForestOrdering, PoolingModel  # noqa: F401
from .pooling import PoolingEngine  # noqa: F401
from .publication_bias import PublicationBiasAssessor  # noqa: F401
