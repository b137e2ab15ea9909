"""Dashboard folds over completed status rows.

Rows are plain dicts with `question_id`, `last_is_correct` and
`last_attempt_at`; taxonomy is a mapping of question id to a dict with
`domain_name`, `skill_name` and `difficulty`.
"""

from typing import Dict, Iterable, List, Mapping, Tuple

UNKNOWN = 'Unknown'
RECENT_LIMIT = 10


def _names(taxonomy: Mapping[str, dict], question_id) -> Tuple[str, str]:
    t = taxonomy.get(question_id) or {}
    return t.get('domain_name') or UNKNOWN, t.get('skill_name') or UNKNOWN


def _accuracy(correct: int, attempted: int) -> float:
    return round((correct / attempted) * 100, 1) if attempted else 0.0


def group_by_domain(rows: Iterable[dict], taxonomy: Mapping[str, dict]) -> List[dict]:
    """Attempted/correct counts per domain, sorted by domain name."""
    groups: Dict[str, dict] = {}
    for row in rows:
        domain, _ = _names(taxonomy, row['question_id'])
        g = groups.setdefault(domain, {'domain_name': domain, 'attempted': 0, 'correct': 0})
        g['attempted'] += 1
        if row.get('last_is_correct'):
            g['correct'] += 1
    out = sorted(groups.values(), key=lambda g: g['domain_name'].casefold())
    for g in out:
        g['accuracy'] = _accuracy(g['correct'], g['attempted'])
    return out


def group_by_skill(rows: Iterable[dict], taxonomy: Mapping[str, dict]) -> List[dict]:
    """Attempted/correct counts per (domain, skill), sorted by skill then domain."""
    groups: Dict[Tuple[str, str], dict] = {}
    for row in rows:
        domain, skill = _names(taxonomy, row['question_id'])
        g = groups.setdefault((domain, skill), {'domain_name': domain, 'skill_name': skill, 'attempted': 0, 'correct': 0})
        g['attempted'] += 1
        if row.get('last_is_correct'):
            g['correct'] += 1
    out = sorted(groups.values(), key=lambda g: (g['skill_name'].casefold(), g['domain_name'].casefold()))
    for g in out:
        g['accuracy'] = _accuracy(g['correct'], g['attempted'])
    return out


def recent_activity(rows: Iterable[dict], taxonomy: Mapping[str, dict], limit: int = RECENT_LIMIT) -> List[dict]:
    """The `limit` most recent rows, newest first, with taxonomy names."""
    ordered = sorted(
        rows,
        key=lambda r: (r.get('last_attempt_at') is not None, r.get('last_attempt_at') or ''),
        reverse=True,
    )
    out = []
    for row in ordered[:limit]:
        domain, skill = _names(taxonomy, row['question_id'])
        out.append({
            'question_id': row['question_id'],
            'domain_name': domain,
            'skill_name': skill,
            'difficulty': (taxonomy.get(row['question_id']) or {}).get('difficulty'),
            'last_is_correct': row.get('last_is_correct'),
            'last_attempt_at': row.get('last_attempt_at'),
        })
    return out


def summarize(rows: List[dict], taxonomy: Mapping[str, dict]) -> dict:
    """Full dashboard payload for one user's completed rows."""
    return {
        'domain_stats': group_by_domain(rows, taxonomy),
        'topic_stats': group_by_skill(rows, taxonomy),
        'recent_activity': recent_activity(rows, taxonomy),
        'total_attempted': len(rows),
        'total_correct': sum(1 for r in rows if r.get('last_is_correct')),
    }
