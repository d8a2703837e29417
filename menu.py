"""Read-only access to the menu store."""

from typing import List

from errors import NotFoundError
from schemas import MenuItem


class MenuCatalog:
    def __init__(self, store):
        self.store = store

    def get_menu_item(self, item_id: str) -> MenuItem:
        doc = self.store.get("menuitem", item_id)
        if not doc:
            raise NotFoundError(f"Menu item not found: {item_id}")
        return MenuItem(**doc)

    def restaurant_items(self, restaurant_id: str) -> List[MenuItem]:
        docs = self.store.find("menuitem", {"restaurant_id": restaurant_id}, sort=[("name", 1)])
        return [MenuItem(**d) for d in docs]
