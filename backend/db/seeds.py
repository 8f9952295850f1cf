"""Default catalog contents written on first run, plus known stale values.

Only sources that answer calls through this gateway, or that are external
hints (`ext-` ids), are seeded. Adapter-backed sources such as GitHub enter
the catalog when their adapter is configured and synced.
"""

from typing import Dict, List, Tuple

# (id, name, description, tools, resources)
DEFAULT_SOURCES: List[Tuple[str, str, str, str, str]] = [
    (
        "kb-notes",
        "Knowledge Base Notes",
        "Personal notes with full-text search",
        "create-note,search-notes,get-note,update-note,delete-note",
        "switchyard://kb/tags,switchyard://kb/stats",
    ),
    (
        "kb-bookmarks",
        "Knowledge Base Bookmarks",
        "Saved URLs and references",
        "save-bookmark,search-bookmarks,delete-bookmark",
        "",
    ),
    (
        "ext-writings",
        "Personal Writings",
        "Personal website, blog posts, public profile and published writing sections",
        "",
        "",
    ),
]

DEFAULT_CONTEXTS: Dict[str, str] = {
    "code": "Writing, reviewing, or analyzing application code and engineering topics",
    "product-and-project-strategy": (
        "Product strategy, vision documents, roadmaps, and project tracking"
    ),
    "creative-writing": "Fiction writing, story development, and creative composition",
    "personal-brand": "Public web presence, published writing, and professional profile",
    "research": "Research notes, references, and information gathering",
    "general": "Catch-all context for general knowledge queries and tasks",
}

# (context, source_id, priority, reason)
DEFAULT_RULES: List[Tuple[str, str, int, str]] = [
    ("code", "kb-bookmarks", 1, "Bookmarks may contain saved technical references"),
    ("code", "kb-notes", 2, "Notes may contain code snippets or technical decisions"),
    ("product-and-project-strategy", "kb-notes", 1, "Notes may contain meeting notes or project context"),
    ("creative-writing", "ext-writings", 1, "Published writing sections hold finished creative pieces"),
    ("creative-writing", "kb-notes", 2, "Notes may contain story ideas or writing drafts"),
    ("personal-brand", "ext-writings", 1, "Website and blog are the canonical public presence"),
    ("personal-brand", "kb-bookmarks", 2, "Bookmarks may track published content or press"),
    ("research", "kb-notes", 1, "Notes are the primary place to store research findings"),
    ("research", "kb-bookmarks", 2, "Bookmarks save reference material"),
    ("general", "kb-notes", 1, "Notes are the most versatile knowledge store"),
    ("general", "kb-bookmarks", 2, "Bookmarks provide quick references"),
]

# Sources dropped from the default catalog in v1; their rules go with them.
STALE_SOURCE_IDS_V1: Tuple[str, ...] = ("writings-fiction-archive", "legacy-research-profile")

# Older catalogs seeded the writings hint under a plain id, so it looked proxied.
LEGACY_WRITINGS_SOURCE_ID = "writings"
WRITINGS_SOURCE_ID = "ext-writings"
WRITINGS_DESCRIPTION_V1 = DEFAULT_SOURCES[2][2]
WRITINGS_STALE_DESCRIPTIONS: Tuple[str, ...] = (
    "Personal website and blog posts",
    "Personal website, blog posts, and LinkedIn profile",
)

RENAMED_CONTEXTS_V1: Tuple[Tuple[str, str], ...] = (
    ("project-management", "product-and-project-strategy"),
)
