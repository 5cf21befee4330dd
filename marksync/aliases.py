from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Tuple, TypeVar

H = TypeVar("H")

# Known spellings of the three standard top-level roots. Chrome and Edge in
# English and Chinese, plus the Firefox root labels.
_ROOT_GROUPS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (
        "toolbar",
        ("书签栏", "收藏夹栏", "Bookmarks bar", "Favorites bar", "Bookmarks Toolbar"),
    ),
    (
        "other",
        ("其他书签", "其他收藏夹", "Other bookmarks", "Other favorites", "Other Bookmarks"),
    ),
    (
        "mobile",
        ("移动设备书签", "移动设备收藏夹", "Mobile bookmarks", "Mobile favorites", "Mobile Bookmarks"),
    ),
)


def _build_alias_table() -> Dict[str, List[str]]:
    table: Dict[str, List[str]] = {}
    for _role, names in _ROOT_GROUPS:
        for name in names:
            table[name] = [other for other in names if other != name] + [name]
    return table


FOLDER_NAME_ALIASES: Dict[str, List[str]] = _build_alias_table()
_ROLE_BY_NAME: Dict[str, str] = {name: role for role, names in _ROOT_GROUPS for name in names}


def resolve_top_folder(name: str, top_folders: Mapping[str, H]) -> Optional[H]:
    """Find the destination top-level folder matching a snapshot root title.

    Tries an exact title match, then the alias list of ``name`` in order, then
    any destination folder whose own alias list contains ``name``. Matching is
    exact and case-sensitive.
    """
    if name in top_folders:
        return top_folders[name]

    for alias in FOLDER_NAME_ALIASES.get(name, ()):
        if alias in top_folders:
            return top_folders[alias]

    for local_name, handle in top_folders.items():
        if name in FOLDER_NAME_ALIASES.get(local_name, ()):
            return handle

    return None


def canonical_role(name: str) -> Optional[str]:
    return _ROLE_BY_NAME.get(name)
