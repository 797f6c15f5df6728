from gg_pricing.built_in_logic import (
    AnalysisResult,
    BootstrapCancelled,
    ClusterBootstrap,
    CurveAggregator,
    Interpolator,
    Optimizer,
    PricingPipeline,
    RowNormalizer,
    SegmentFilter,
    analyze,
)
from gg_pricing.helpers import (
    AnalysisConfig,
    Cache,
    ColumnMapping,
    DataEng,
    Defaults,
    ResultCache,
    ResultsTable,
)
from gg_pricing.session import AnalysisSession

__version__ = "0.1.0"
