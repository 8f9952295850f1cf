"""
Routing tools: ask which sources suit a context, and edit the rule set.
"""

from typing import Any, Dict

from db.routing import get_context_router
from db.sqlite_client import get_sqlite_client

from .surface import ToolSurface, tool_error, tool_response

ROUTING_GUIDE_URI = "switchyard://sources/routing"

_CONTEXT = {
    "type": "string",
    "description": "Context name, e.g. 'code', 'research', 'creative-writing'",
}
_SOURCE_ID = {"type": "string", "description": "Source id as listed by list-sources"}


async def get_source_routing(args: Dict[str, Any]):
    try:
        answer = await get_context_router().get_routing(args["context"])
    except ValueError as exc:
        return tool_error(exc)
    return answer.to_text()


async def list_sources(args: Dict[str, Any]):
    router = get_context_router()
    sources = await get_sqlite_client().list_sources()
    return tool_response(
        ok=True,
        sources=sources,
        contexts=await router.list_contexts(),
    )


async def set_source_rule(args: Dict[str, Any]):
    try:
        rule = await get_context_router().set_rule(
            args["context"], args["source_id"], args.get("reason") or ""
        )
    except ValueError as exc:
        return tool_error(exc)
    verb = "Added" if rule["created"] else "Updated"
    return tool_response(
        ok=True,
        message=f"{verb} rule {rule['context']} -> {rule['source_id']} at priority {rule['priority']}.",
        rule=rule,
    )


async def delete_source_rule(args: Dict[str, Any]):
    try:
        outcome = await get_context_router().delete_rule(args["context"], args["source_id"])
    except (ValueError, LookupError) as exc:
        return tool_error(exc)
    return tool_response(ok=True, message=f"Removed {outcome['deleted']}.", **outcome)


async def reorder_source_rules(args: Dict[str, Any]):
    try:
        rules = await get_context_router().reorder(args["context"], args["source_ids"])
    except ValueError as exc:
        return tool_error(exc)
    return tool_response(ok=True, context=args["context"], rules=rules)


async def register_source(args: Dict[str, Any]):
    try:
        source = await get_context_router().register_source(
            args["id"],
            args["name"],
            args.get("description") or "",
            args.get("tools"),
            args.get("resources"),
        )
    except ValueError as exc:
        return tool_error(exc)
    return tool_response(ok=True, message=f"Registered source {source['id']}.", source=source)


async def describe_context(args: Dict[str, Any]):
    try:
        context = await get_context_router().describe_context(
            args["name"], args.get("description") or ""
        )
    except ValueError as exc:
        return tool_error(exc)
    return tool_response(ok=True, context=context)


async def read_routing_guide() -> str:
    return await get_context_router().routing_guide()


def register_source_tools(surface: ToolSurface) -> None:
    surface.add_tool(
        "get-source-routing",
        "Which sources to prefer for a kind of task, in priority order. "
        "Unknown contexts fall back to the general rules.",
        {"type": "object", "properties": {"context": _CONTEXT}, "required": ["context"]},
        get_source_routing,
    )
    surface.add_tool(
        "list-sources",
        "All registered sources with their tools and resources, plus known contexts",
        {"type": "object", "properties": {}},
        list_sources,
    )
    surface.add_tool(
        "set-source-rule",
        "Add a source to a context (appended at the lowest priority) or update its reason",
        {
            "type": "object",
            "properties": {
                "context": _CONTEXT,
                "source_id": _SOURCE_ID,
                "reason": {"type": "string", "description": "When to use this source"},
            },
            "required": ["context", "source_id"],
        },
        set_source_rule,
        is_write=True,
    )
    surface.add_tool(
        "delete-source-rule",
        "Remove a source from a context; remaining priorities close up",
        {
            "type": "object",
            "properties": {"context": _CONTEXT, "source_id": _SOURCE_ID},
            "required": ["context", "source_id"],
        },
        delete_source_rule,
        is_write=True,
    )
    surface.add_tool(
        "reorder-source-rules",
        "Set a context's full priority order; must list exactly its current sources",
        {
            "type": "object",
            "properties": {
                "context": _CONTEXT,
                "source_ids": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Source ids, highest priority first",
                },
            },
            "required": ["context", "source_ids"],
        },
        reorder_source_rules,
        is_write=True,
    )
    surface.add_tool(
        "register-source",
        "Create or overwrite a source entry (use an 'ext-' id for integrations "
        "the client reaches directly)",
        {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "name": {"type": "string"},
                "description": {"type": "string"},
                "tools": {"type": "array", "items": {"type": "string"}},
                "resources": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["id", "name"],
        },
        register_source,
        is_write=True,
    )
    surface.add_tool(
        "describe-context",
        "Create a context or change its description",
        {
            "type": "object",
            "properties": {"name": _CONTEXT, "description": {"type": "string"}},
            "required": ["name"],
        },
        describe_context,
        is_write=True,
    )
    surface.add_resource(
        ROUTING_GUIDE_URI,
        "source-routing-guide",
        "Every source and every context's ranked rules, as markdown",
        read_routing_guide,
        mime_type="text/markdown",
    )
