"""Single-line CSV tokenizer shared by the schema and diff parsers."""

from __future__ import annotations


def split_lines(text: str | None) -> list[str]:
    """
    Split a block into records on ``\\n`` only, dropping a trailing ``\\r``.

    ``str.splitlines`` also breaks on vertical tabs, form feeds, ``\\x1c``-``\\x1e``,
    ``\\x85`` and the Unicode line/paragraph separators, all of which can sit
    inside a messy cell value.
    """
    if not text:
        return []
    return [line[:-1] if line.endswith("\r") else line for line in text.split("\n")]


def parse_csv_line(line: str, *, strip: bool = False) -> list[str]:
    """
    Split one logical CSV line with RFC4180 quoting.

    A doubled quote inside a quoted field is a literal quote and commas inside
    quotes are not separators. A quote that does not open a field is kept as a
    literal character and an unterminated quoted field runs to the end of the
    line. Always returns at least one field. With ``strip`` the fields are
    trimmed and a quote after ", " still opens a quoted field.

    There is no field size limit.
    """
    fields: list[str] = []
    current: list[str] = []
    in_quotes = False
    at_field_start = True
    i = 0
    length = len(line)
    while i < length:
        ch = line[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < length and line[i + 1] == '"':
                    current.append('"')
                    i += 2
                    continue
                in_quotes = False
            else:
                current.append(ch)
        elif ch == ",":
            fields.append("".join(current))
            current = []
            at_field_start = True
        elif ch == '"' and at_field_start:
            in_quotes = True
            at_field_start = False
        elif ch == " " and at_field_start and strip:
            pass
        else:
            current.append(ch)
            at_field_start = False
        i += 1
    fields.append("".join(current))

    if strip:
        return [field.strip() for field in fields]
    return fields


def quote_csv_field(value: object) -> str:
    text = "" if value is None else str(value)
    if any(ch in text for ch in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def format_csv_line(values) -> str:
    return ",".join(quote_csv_field(value) for value in values)
