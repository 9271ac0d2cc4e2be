from .providers import RealtorProvider, SearchQuery
from .search import aggregated_search, SearchOutcome

__all__ = ["RealtorProvider", "SearchQuery", "aggregated_search", "SearchOutcome"]
