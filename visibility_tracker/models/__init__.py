from visibility_tracker.models.brand import Brand, Competitor
from visibility_tracker.models.citation import Citation, CitationCategory
from visibility_tracker.models.collector_result import CollectorResult
from visibility_tracker.models.collector_setting import CollectorSetting
from visibility_tracker.models.consolidated_analysis import ConsolidatedAnalysis
from visibility_tracker.models.metric_fact import BrandMetric, CompetitorMetric, MetricFact
from visibility_tracker.models.query import Query, QueryIntent
from visibility_tracker.models.query_execution import QueryExecution
from visibility_tracker.models.sentiment import BrandSentiment, CompetitorSentiment

__all__ = [
    "Brand",
    "BrandMetric",
    "BrandSentiment",
    "Citation",
    "CitationCategory",
    "CollectorResult",
    "CollectorSetting",
    "Competitor",
    "CompetitorMetric",
    "CompetitorSentiment",
    "ConsolidatedAnalysis",
    "MetricFact",
    "Query",
    "QueryExecution",
    "QueryIntent",
]
