"""Feed composition pipeline components and defaults."""
from __future__ import annotations

from .exceptions import (
    CompositionError,
    FeedError,
    InvalidFeedFilter,
    InvalidTransition,
    MalformedQueryError,
    PartialJoinError,
    RetrievalError,
    StaleResultDiscard,
)
from .models import (
    ContentItem,
    ContentKind,
    FeedFilters,
    FeedResult,
    JoinedEntity,
    PaginationMode,
    SearchQuery,
    SortKey,
    TimeRange,
)
from .dedup_index import DeduplicationIndex
from .query_composer import (
    BaseQueryComposer,
    PrimaryQuerySpec,
    QueryComposer,
    build_primary_query,
)
from .secondary_predicate import (
    apply_secondary_predicate,
    apply_secondary_predicate_async,
)
from .pagination import FetchState, PaginationState, PaginationStateMachine, Trigger
from .creator_scope import CreatorScopeOptimizer, ScopeStrategy
from .retrieval import BatchRetriever, JoinedEntityLoader, PrimaryStoreExecutor, QueryPage
from .scope_cache import ScopeCache, ScopeSnapshot
from .engine import FeedAction, FeedCompositionEngine

__all__ = [
    "CompositionError",
    "FeedError",
    "InvalidFeedFilter",
    "InvalidTransition",
    "MalformedQueryError",
    "PartialJoinError",
    "RetrievalError",
    "StaleResultDiscard",
    "ContentItem",
    "ContentKind",
    "FeedFilters",
    "FeedResult",
    "JoinedEntity",
    "PaginationMode",
    "SearchQuery",
    "SortKey",
    "TimeRange",
    "DeduplicationIndex",
    "BaseQueryComposer",
    "PrimaryQuerySpec",
    "QueryComposer",
    "build_primary_query",
    "apply_secondary_predicate",
    "apply_secondary_predicate_async",
    "FetchState",
    "PaginationState",
    "PaginationStateMachine",
    "Trigger",
    "CreatorScopeOptimizer",
    "ScopeStrategy",
    "BatchRetriever",
    "JoinedEntityLoader",
    "PrimaryStoreExecutor",
    "QueryPage",
    "ScopeCache",
    "ScopeSnapshot",
    "FeedAction",
    "FeedCompositionEngine",
]
