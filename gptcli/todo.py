"""Todo list shared by the manage_todo tool and the /todo REPL command."""

from dataclasses import asdict, dataclass

from . import fmt
from .results import ToolResult

VALID_ACTIONS = {"create", "list", "update", "complete", "delete"}
NOT_STARTED = "not-started"
COMPLETED = "completed"
STATUSES = (NOT_STARTED, COMPLETED)


@dataclass
class TodoItem:
    id: int
    title: str
    description: str = ""
    status: str = NOT_STARTED


def _coerce_id(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


class TodoList:
    def __init__(self, items: list[TodoItem] | None = None, last_id: int = 0):
        self.items: list[TodoItem] = list(items or [])
        # High-water mark so an id freed by delete is never handed out again.
        self._last_id = max(last_id, max((i.id for i in self.items), default=0))

    @classmethod
    def from_list(cls, data, next_id=None) -> "TodoList":
        """Build from persisted JSON, skipping malformed entries.

        `next_id` is the saved id counter; it is ignored unless it is a
        positive integer.
        """
        items: list[TodoItem] = []
        if isinstance(data, list):
            for raw in data:
                if not isinstance(raw, dict):
                    continue
                item_id = _coerce_id(raw.get("id"))
                if item_id is None or item_id < 1:
                    continue
                status = raw.get("status")
                items.append(
                    TodoItem(
                        id=item_id,
                        title=str(raw.get("title") or "Untitled"),
                        description=str(raw.get("description") or ""),
                        status=status if status in STATUSES else NOT_STARTED,
                    )
                )
        counter = _coerce_id(next_id)
        return cls(items, last_id=counter - 1 if counter and counter > 0 else 0)

    def to_list(self) -> list[dict]:
        return [asdict(i) for i in self.items]

    def next_id(self) -> int:
        return max(self._last_id, max((i.id for i in self.items), default=0)) + 1

    def find(self, item_id: int) -> TodoItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    # -- Mutations -----------------------------------------------------------

    def create(self, title: str, description: str = "") -> TodoItem:
        item = TodoItem(id=self.next_id(), title=title or "Untitled", description=description)
        self.items.append(item)
        self._last_id = item.id
        if len(self.items) == 1:
            fmt.notice("Created TODO List")
        fmt.notice("Added 1 item to TODO List")
        return item

    def update(
        self, item_id: int, title: str | None = None, description: str | None = None
    ) -> TodoItem | None:
        item = self.find(item_id)
        if item is None:
            return None
        if title:
            item.title = title
        if description is not None:
            item.description = description
        fmt.notice(f"Updated TODO item #{item_id}")
        return item

    def complete(self, item_id: int) -> TodoItem | None:
        item = self.find(item_id)
        if item is None:
            return None
        item.status = COMPLETED
        fmt.notice("Marked 1 TODO List item as completed")
        return item

    def delete(self, item_id: int) -> TodoItem | None:
        item = self.find(item_id)
        if item is None:
            return None
        self.items.remove(item)
        fmt.notice("Deleted 1 TODO List item")
        return item

    # -- Tool entry point ----------------------------------------------------

    def process(self, args: dict) -> ToolResult:
        """Handle a manage_todo call."""
        action = str(args.get("action", "")).lower()
        if action not in VALID_ACTIONS:
            return ToolResult.failure(
                "InvalidArguments",
                f"invalid action {action!r}, expected one of: {', '.join(sorted(VALID_ACTIONS))}",
            )

        if action == "list":
            fmt.notice(f"TODO List: {len(self.items)} item(s)")
            return ToolResult.success(items=self.to_list())

        if action == "create":
            title = args.get("title")
            description = args.get("description")
            item = self.create(
                str(title) if title else "Untitled",
                str(description) if description is not None else "",
            )
            return ToolResult.success(ok=True, item=asdict(item))

        item_id = _coerce_id(args.get("id"))
        if item_id is None:
            return ToolResult.failure(
                "InvalidArguments", f"'{action}' requires an integer 'id'"
            )

        if action == "update":
            title = args.get("title")
            description = args.get("description")
            item = self.update(
                item_id,
                title=str(title) if title is not None else None,
                description=str(description) if description is not None else None,
            )
        elif action == "complete":
            item = self.complete(item_id)
        else:
            item = self.delete(item_id)

        if item is None:
            return ToolResult.failure("NotFound", f"todo item #{item_id} not found", id=item_id)
        if action == "delete":
            return ToolResult.success(ok=True, removed=asdict(item))
        return ToolResult.success(ok=True, item=asdict(item))
