from .content_store import InMemoryContentStore, item_from_record

__all__ = [
    "InMemoryContentStore",
    "item_from_record",
]
