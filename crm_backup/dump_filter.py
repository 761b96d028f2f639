"""
Scoping of plain-format pg_dump scripts to a subset of their tables.

pg_dump separates every object with a comment header such as::

    --
    -- Name: schools; Type: TABLE; Schema: public; Owner: crm
    --

and, for table contents, ``-- Data for Name: schools; Type: TABLE DATA; ...``.
A selective restore keeps the preamble statements (SET ..., the DROP statements
emitted by ``--clean``) and the object blocks that belong to one of the selected
tables, and discards blocks and preamble statements that belong to any other
table of the dump. Objects that belong to no dumped table are kept.

Foreign keys that a left-out table holds on a selected table are kept as well
(both the preamble's ``DROP CONSTRAINT`` and the ``ADD CONSTRAINT`` block), since
replacing the selected table drops them.
"""
import re
from typing import Iterable, List, Optional

HEADER_RE = re.compile(r"^-- (?:Data for )?Name: (?P<name>[^;]+); Type: (?P<type>[^;]+);")
FOOTER_MARKER = "-- PostgreSQL database dump complete"
QUALIFIED_RE = re.compile(r'\bpublic\.("(?:[^"]|"")+"|[A-Za-z_][A-Za-z0-9_$]*)')
FK_RE = re.compile(r'ADD CONSTRAINT ("(?:[^"]|"")+"|\S+) FOREIGN KEY')
DROP_CONSTRAINT_RE = re.compile(r'DROP CONSTRAINT IF EXISTS ("(?:[^"]|"")+"|[^\s;]+)')
ALTER_ONLY_RE = re.compile(r"^ALTER TABLE ONLY ")


def _unquote(identifier: str) -> str:
    if identifier.startswith('"') and identifier.endswith('"'):
        return identifier[1:-1].replace('""', '"')
    return identifier.lower()


def _owner_by_prefix(name: str, tables: List[str]) -> Optional[str]:
    """Sequences, defaults and constraints are named after their table (schools_id_seq, "schools schools_pkey")."""
    candidates = [t for t in tables if name == t or name.startswith(t + " ") or name.startswith(t + "_")]
    if not candidates:
        return None
    return max(candidates, key=len)


def owning_table(text: str, tables: List[str], object_name: Optional[str] = None) -> Optional[str]:
    """
    Returns the dumped table a chunk of SQL belongs to: the first table of the dump it
    references as ``public.<table>``, falling back to a name-prefix match on the
    referenced objects and the header's object name.
    """
    referenced = [_unquote(m.group(1)) for m in QUALIFIED_RE.finditer(text)]
    for name in referenced:
        if name in tables:
            return name
    for name in referenced + ([object_name] if object_name else []):
        owner = _owner_by_prefix(name, tables)
        if owner:
            return owner
    return None


def _split_blocks(lines: List[str]):
    """Yields (header_name, lines) pairs; the preamble and footer come with header_name None."""
    block: List[str] = []
    name = None
    for line in lines:
        header = HEADER_RE.match(line)
        # A header is framed by bare "--" lines; the opening one belongs to the new block
        if header or line.startswith(FOOTER_MARKER):
            opener = []
            if block and block[-1].rstrip("\r\n") == "--":
                opener = [block.pop()]
            yield name, block
            block = opener
            name = header.group("name").strip() if header else None
        block.append(line)
    yield name, block


def _referenced_tables(text: str, tables: List[str]) -> set:
    return {name for name in (_unquote(m.group(1)) for m in QUALIFIED_RE.finditer(text)) if name in tables}


def _inbound_foreign_keys(blocks, keep: set, tables: List[str]) -> set:
    """
    Names of the foreign keys that tables left out of the restore hold on a kept table.
    Dropping a kept table (``DROP ... CASCADE`` or the script's own DROP) removes them,
    so the scoped script has to drop and re-add them too.
    """
    names = set()
    for name, block in blocks:
        if name is None:
            continue
        text = "".join(block)
        fk = FK_RE.search(text)
        if fk is None:
            continue
        owner = owning_table(text, tables, object_name=name)
        if owner is not None and owner not in keep and _referenced_tables(text, tables) & keep:
            names.add(_unquote(fk.group(1)))
    return names


def _filter_preamble(lines: List[str], keep: set, tables: List[str], foreign_keys: set) -> List[str]:
    kept = []
    for line in lines:
        stripped = line.strip()
        if stripped and not stripped.startswith("--"):
            owner = owning_table(stripped, tables)
            if owner is not None and owner not in keep:
                dropped = DROP_CONSTRAINT_RE.search(stripped)
                if dropped is None or _unquote(dropped.group(1)) not in foreign_keys:
                    continue
        kept.append(line)
    return kept


def _guard_missing_table(block: List[str]) -> List[str]:
    # The referencing table is not part of the restore and may not exist
    return [ALTER_ONLY_RE.sub("ALTER TABLE IF EXISTS ONLY ", line) for line in block]


def filter_dump(script: str, keep_tables: Iterable[str], dumped_tables: Iterable[str]) -> str:
    """Returns the subset of a plain pg_dump script that restores only ``keep_tables``."""
    keep = set(keep_tables)
    tables = list(dumped_tables)
    blocks = list(_split_blocks(script.splitlines(keepends=True)))
    foreign_keys = _inbound_foreign_keys(blocks, keep, tables)

    output: List[str] = []
    preamble, rest = blocks[0], blocks[1:]
    output.extend(_filter_preamble(preamble[1], keep, tables, foreign_keys))
    for name, block in rest:
        if name is None:
            # Footer
            output.extend(block)
            continue
        text = "".join(block)
        owner = owning_table(text, tables, object_name=name)
        if owner is None or owner in keep:
            output.extend(block)
            continue
        fk = FK_RE.search(text)
        if fk is not None and _unquote(fk.group(1)) in foreign_keys:
            output.extend(_guard_missing_table(block))
    return "".join(output)
