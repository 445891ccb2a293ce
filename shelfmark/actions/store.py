from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional


class RecordStore(ABC):
    """Host library that actually creates, edits and deletes records.

    Items are returned as plain dicts::

        {
            "key": "ABCD1234",
            "library_id": 1,
            "item_type": "journalArticle",
            "fields": {"title": "...", "date": "..."},
            "creators": [{"creator_type": "author", "first_name": "...", "last_name": "..."}],
            "tags": ["to-read"],
            "collections": ["COLLKEY1"],
        }
    """

    default_library_id: int = 1

    @abstractmethod
    async def get_item(self, library_id: int, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def update_item(
        self,
        library_id: int,
        key: str,
        *,
        fields: Optional[Dict[str, Any]] = None,
        creators: Optional[List[Dict[str, Any]]] = None,
        add_tags: Iterable[str] = (),
        remove_tags: Iterable[str] = (),
        add_collections: Iterable[str] = (),
        remove_collections: Iterable[str] = (),
    ) -> None:
        pass

    @abstractmethod
    async def erase_item(self, library_id: int, key: str) -> bool:
        """Delete an item. Returns False if it no longer exists."""
        pass

    @abstractmethod
    async def create_annotation(self, library_id: int, attachment_key: str, annotation: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    async def create_note(self, library_id: int, parent_key: Optional[str], title: str, content: str) -> str:
        pass

    @abstractmethod
    async def create_item(self, proposed: Dict[str, Any]) -> Dict[str, Any]:
        """Import an external reference. Returns a raw create_item result payload."""
        pass

    @abstractmethod
    async def create_collection(self, library_id: int, name: str, parent_key: Optional[str] = None) -> str:
        pass

    @abstractmethod
    async def get_collection(self, library_id: int, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def add_items_to_collection(self, library_id: int, collection_key: str, item_keys: List[str]) -> int:
        pass

    @abstractmethod
    async def erase_collection(self, library_id: int, key: str) -> bool:
        pass

    async def resolve_library(self, name: str) -> Optional[int]:
        """Map a library name to its id. Override for multi-library hosts."""
        return None

    async def get_library_name(self, library_id: int) -> Optional[str]:
        return None
