"""Table extraction from HTML: header row plus data rows per table."""

import logging

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)


def is_data_table(table: Tag) -> tuple[bool, int]:
    """Score a table to tell data tables from layout tables.

    Returns (is_data_table, score).
    """
    score = 0
    if table.find("thead"):
        score += 2
    if table.find("tbody"):
        score += 1
    if table.find_all("th"):
        score += 2
    if table.find("caption"):
        score += 2
    rows = table.find_all("tr")
    if len(rows) >= 2:
        col_counts = {len(row.find_all(["td", "th"])) for row in rows[:10]}
        if len(col_counts) <= 2:
            score += 2
    # Nested tables and presentation role mean layout
    if table.find("table"):
        score -= 3
    if (table.get("role") or "").lower() in ("presentation", "none"):
        score -= 3
    if len(rows) >= 3:
        score += 1
    return score >= 3, score


def _expand_colspan(cells: list[Tag]) -> list[str]:
    """Repeat a cell's text once per spanned column."""
    expanded = []
    for cell in cells:
        text = cell.get_text(" ", strip=True)
        try:
            colspan = max(int(cell.get("colspan", 1) or 1), 1)
        except ValueError:
            colspan = 1
        expanded.extend([text] * colspan)
    return expanded


def _own_rows(table: Tag) -> list[Tag]:
    """<tr> elements of this table, excluding rows of nested tables."""
    return [tr for tr in table.find_all("tr") if tr.find_parent("table") is table]


def extract_tables(source: str | BeautifulSoup | Tag, data_only: bool = False) -> list[dict]:
    """Extract tables as {headers, rows, caption}.

    Headers come from the first <thead> row; without a <thead> the first row
    is treated as the header row and the remaining rows as data. Set
    data_only to skip tables that score as layout tables.
    """
    soup = BeautifulSoup(source, "lxml") if isinstance(source, str) else source
    results = []

    for table in soup.find_all("table"):
        if data_only:
            is_data, _ = is_data_table(table)
            if not is_data:
                continue

        rows = _own_rows(table)
        if not rows:
            continue

        caption_tag = table.find("caption")
        caption = caption_tag.get_text(strip=True) if caption_tag else ""

        thead = table.find("thead")
        header_row = thead.find("tr") if thead else None
        if header_row is not None:
            headers = _expand_colspan(header_row.find_all(["th", "td"]))
            body = [r for r in rows if r is not header_row and r.find_parent("thead") is None]
        else:
            headers = _expand_colspan(rows[0].find_all(["th", "td"]))
            body = rows[1:]

        data_rows = []
        for tr in body:
            cells = tr.find_all(["td", "th"])
            if cells:
                data_rows.append(_expand_colspan(cells))

        results.append({"headers": headers, "rows": data_rows, "caption": caption})

    return results
