"""Current active term selection."""

from datetime import date
from typing import Iterable, List, Optional

from ..types import CurrentActiveTerm, Term, parse_date, utc_now


def select_current_term(terms: Iterable[Term], today: date) -> Optional[Term]:
    """Pick the term a section is working in on ``today``.

    The term whose range contains today wins; otherwise the future term
    starting soonest; otherwise the term that ended most recently. Terms
    without parseable dates only win when nothing else is available.
    """
    dated = []
    undated: List[Term] = []
    for term in terms:
        start, end = parse_date(term.start_date), parse_date(term.end_date)
        if start is None or end is None:
            undated.append(term)
        else:
            dated.append((start, end, term))

    current = [(s, e, t) for s, e, t in dated if s <= today <= e]
    if current:
        # Overlapping terms: the one that started last is the live one
        return max(current, key=lambda x: (x[0], x[2].term_id))[2]

    future = [(s, e, t) for s, e, t in dated if s > today]
    if future:
        return min(future, key=lambda x: (x[0], x[2].term_id))[2]

    if dated:
        return max(dated, key=lambda x: (x[1], x[2].term_id))[2]
    return undated[0] if undated else None


def current_term_record(term: Term, last_updated: Optional[str] = None) -> CurrentActiveTerm:
    return CurrentActiveTerm(
        section_id=term.section_id,
        term_id=term.term_id,
        term_name=term.name,
        start_date=term.start_date,
        end_date=term.end_date,
        last_updated=last_updated or utc_now(),
    )
