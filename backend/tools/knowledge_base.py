"""
Native knowledge base tools: notes and bookmarks.

Thin wrappers over SQLiteClient; every tool answers with a JSON object
carrying an `ok` flag.
"""

from typing import Any, Dict

from db.sqlite_client import get_sqlite_client

from .surface import ToolSurface, to_json, tool_error, tool_response

_TAGS = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Free-form tags, e.g. ['mcp', 'reading-list']",
}
_LIMIT = {"type": "integer", "description": "Maximum results (1-100, default 20)"}
_ID = {"type": "integer", "description": "Numeric id"}

NOTE_TOOLS = ("create-note", "search-notes", "get-note", "update-note", "delete-note")
BOOKMARK_TOOLS = ("save-bookmark", "search-bookmarks", "delete-bookmark")


async def create_note(args: Dict[str, Any]):
    try:
        note = await get_sqlite_client().create_note(
            args["title"], args["content"], args.get("tags")
        )
    except ValueError as exc:
        return tool_error(exc)
    return tool_response(ok=True, message=f"Created note {note['id']}.", note=note)


async def search_notes(args: Dict[str, Any]):
    notes = await get_sqlite_client().search_notes(
        args.get("query") or "", args.get("tag"), args.get("limit") or 20
    )
    return tool_response(ok=True, count=len(notes), notes=notes)


async def get_note(args: Dict[str, Any]):
    note = await get_sqlite_client().get_note(args["id"])
    if note is None:
        return tool_error(f"Note {args['id']} not found.")
    return tool_response(ok=True, note=note)


async def update_note(args: Dict[str, Any]):
    try:
        note = await get_sqlite_client().update_note(
            args["id"], args.get("title"), args.get("content"), args.get("tags")
        )
    except ValueError as exc:
        return tool_error(exc)
    return tool_response(ok=True, message=f"Updated note {note['id']}.", note=note)


async def delete_note(args: Dict[str, Any]):
    if not await get_sqlite_client().delete_note(args["id"]):
        return tool_error(f"Note {args['id']} not found.")
    return tool_response(ok=True, message=f"Deleted note {args['id']}.")


async def save_bookmark(args: Dict[str, Any]):
    try:
        bookmark = await get_sqlite_client().save_bookmark(
            args["url"], args.get("title") or "", args.get("description") or "", args.get("tags")
        )
    except ValueError as exc:
        return tool_error(exc)
    return tool_response(ok=True, message=f"Saved bookmark {bookmark['id']}.", bookmark=bookmark)


async def search_bookmarks(args: Dict[str, Any]):
    bookmarks = await get_sqlite_client().search_bookmarks(
        args.get("query") or "", args.get("tag"), args.get("limit") or 20
    )
    return tool_response(ok=True, count=len(bookmarks), bookmarks=bookmarks)


async def delete_bookmark(args: Dict[str, Any]):
    if not await get_sqlite_client().delete_bookmark(args["id"]):
        return tool_error(f"Bookmark {args['id']} not found.")
    return tool_response(ok=True, message=f"Deleted bookmark {args['id']}.")


async def read_tags() -> str:
    return to_json(await get_sqlite_client().knowledge_base_tags())


async def read_stats() -> str:
    return to_json(await get_sqlite_client().knowledge_base_stats())


def register_knowledge_base_tools(surface: ToolSurface) -> None:
    surface.add_tool(
        "create-note",
        "Create a note in the personal knowledge base",
        {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Short title"},
                "content": {"type": "string", "description": "Note body (markdown)"},
                "tags": _TAGS,
            },
            "required": ["title", "content"],
        },
        create_note,
        is_write=True,
    )
    surface.add_tool(
        "search-notes",
        "Full-text search over notes, optionally narrowed to one tag",
        {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Words to search for"},
                "tag": {"type": "string", "description": "Only notes carrying this tag"},
                "limit": _LIMIT,
            },
        },
        search_notes,
    )
    surface.add_tool(
        "get-note",
        "Read a single note by id",
        {"type": "object", "properties": {"id": _ID}, "required": ["id"]},
        get_note,
    )
    surface.add_tool(
        "update-note",
        "Change a note's title, content or tags; omitted fields stay as they are",
        {
            "type": "object",
            "properties": {
                "id": _ID,
                "title": {"type": "string"},
                "content": {"type": "string"},
                "tags": _TAGS,
            },
            "required": ["id"],
        },
        update_note,
        is_write=True,
    )
    surface.add_tool(
        "delete-note",
        "Delete a note by id",
        {"type": "object", "properties": {"id": _ID}, "required": ["id"]},
        delete_note,
        is_write=True,
    )
    surface.add_tool(
        "save-bookmark",
        "Save a URL; saving an existing URL updates its title, description and tags",
        {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "The URL to save"},
                "title": {"type": "string"},
                "description": {"type": "string"},
                "tags": _TAGS,
            },
            "required": ["url"],
        },
        save_bookmark,
        is_write=True,
    )
    surface.add_tool(
        "search-bookmarks",
        "Search saved bookmarks by title, description, URL or tag",
        {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "tag": {"type": "string"},
                "limit": _LIMIT,
            },
        },
        search_bookmarks,
    )
    surface.add_tool(
        "delete-bookmark",
        "Delete a bookmark by id",
        {"type": "object", "properties": {"id": _ID}, "required": ["id"]},
        delete_bookmark,
        is_write=True,
    )
    surface.add_resource(
        "switchyard://kb/tags",
        "kb-tags",
        "Tag usage counts across notes and bookmarks",
        read_tags,
        mime_type="application/json",
    )
    surface.add_resource(
        "switchyard://kb/stats",
        "kb-stats",
        "Knowledge base size and search capability",
        read_stats,
        mime_type="application/json",
    )
