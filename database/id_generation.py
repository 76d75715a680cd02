"""
ID Generation - Deterministic task identifiers for Diet meetings

Single source of truth for task primary keys.

Task ID Patterns:
- issue_id mode: the upstream issueID as-is, e.g. "121705253X00120250115"
- uid mode: sha256 hex of "session={n}|house={house}|issueID={id}"

The uid form exists because issueID alone is only unique per house and
session on some upstream mirrors. House names are canonicalized first so
that full-width/half-width and spacing variants hash the same.

Design Philosophy:
- IDs are deterministic: same inputs always produce same ID
- Re-running ingestion over an overlapping range yields the same keys
"""

import hashlib
import re
from typing import Optional, Union

HOUSE_JOINT = "joint"
HOUSE_REPRESENTATIVES = "shugi"
HOUSE_COUNCILLORS = "sangi"
HOUSE_UNKNOWN = "unknown"

UID_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def canonicalize_house(name_of_house: Optional[str]) -> str:
    """Map a house name to a stable token

    Examples:
        >>> canonicalize_house("衆議院")
        'shugi'
        >>> canonicalize_house("参議院")
        'sangi'
        >>> canonicalize_house("両院協議会")
        'joint'
        >>> canonicalize_house(" Some House ")
        'somehouse'
    """
    normalized = str(name_of_house).strip() if name_of_house is not None else ""
    if not normalized:
        return HOUSE_UNKNOWN
    # 両院 first: joint committee names also contain 衆/参
    if "両院" in normalized:
        return HOUSE_JOINT
    if "衆" in normalized:
        return HOUSE_REPRESENTATIVES
    if "参" in normalized:
        return HOUSE_COUNCILLORS
    return re.sub(r"\s+", "", normalized.lower())


def build_issue_uid(issue_id: str, session: Union[int, str, None], name_of_house: Optional[str]) -> str:
    """Generate the sha256 uid for a meeting

    Args:
        issue_id: Upstream issueID
        session: Diet session number
        name_of_house: Upstream nameOfHouse

    Returns:
        64-char lowercase hex digest
    """
    raw = "session={}|house={}|issueID={}".format(
        str(session if session is not None else "").strip(),
        canonicalize_house(name_of_house),
        (issue_id or "").strip(),
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def validate_issue_uid(uid: str) -> bool:
    return bool(uid) and bool(UID_PATTERN.match(uid))


def task_id_for(issue_id: str, session: Union[int, str, None], name_of_house: Optional[str], mode: str = "issue_id") -> str:
    """Task primary key for a meeting under the configured id mode

    Raises:
        ValueError: Unknown mode
    """
    if mode == "issue_id":
        return (issue_id or "").strip()
    if mode == "uid":
        return build_issue_uid(issue_id, session, name_of_house)
    raise ValueError(f"Unknown task id mode: {mode}")
