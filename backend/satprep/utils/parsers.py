"""File parsing utilities that convert question bank exports into a
list of item dictionaries.

Supported input types: JSON (an array, or an object with a `questions`
array) and JSON Lines. Items are returned as-is apart from key
normalization; validation is the import service's job.
"""

import json
from typing import Dict, List

_ALIASES = {
    'id': 'question_id',
    'type': 'question_type',
    'stem': 'stem_html',
    'stimulus': 'stimulus_html',
    'rationale': 'rationale_html',
}


def parse_bank_file(file_bytes: bytes, filename: str) -> List[Dict]:
    """Dispatch to the appropriate parser based on file extension."""
    name = filename.lower()
    if name.endswith('.json'):
        return parse_json(file_bytes)
    if name.endswith('.jsonl') or name.endswith('.ndjson'):
        return parse_jsonl(file_bytes)
    raise ValueError('Unsupported file type')


def parse_json(b: bytes) -> List[Dict]:
    """Parse a JSON array (or `{"questions": [...]}`) of question objects."""
    try:
        data = json.loads(b.decode('utf-8-sig'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f'invalid JSON: {e}')
    if isinstance(data, dict):
        data = data.get('questions')
    if not isinstance(data, list):
        raise ValueError('expected a JSON array of questions')
    return [normalize_item(item) for item in data]


def parse_jsonl(b: bytes) -> List[Dict]:
    """Parse one question object per non-empty line."""
    out = []
    for lineno, line in enumerate(b.decode('utf-8-sig').splitlines(), start=1):
        if not line.strip():
            continue
        try:
            out.append(normalize_item(json.loads(line)))
        except json.JSONDecodeError as e:
            raise ValueError(f'invalid JSON on line {lineno}: {e}')
    return out


def normalize_item(item):
    """Map short key aliases onto canonical names; non-dicts pass through."""
    if not isinstance(item, dict):
        return item
    out = dict(item)
    for alias, canonical in _ALIASES.items():
        if alias in out and canonical not in out:
            out[canonical] = out.pop(alias)
    if isinstance(out.get('question_type'), str):
        out['question_type'] = out['question_type'].strip().lower()
    return out
