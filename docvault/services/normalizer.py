"""Turn raw engine blocks into text blocks, tables and key-value pairs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from docvault.models.analysis import (
    BlockType,
    KeyValuePair,
    RawBlock,
    Table,
    TableCell,
    TextBlock,
)

CHILD = "CHILD"
VALUE = "VALUE"


@dataclass(slots=True)
class NormalisedBlocks:
    text_blocks: list[TextBlock] = field(default_factory=list)
    tables: list[Table] = field(default_factory=list)
    key_values: list[KeyValuePair] = field(default_factory=list)
    confidence: float = 0.0
    flagged_blocks: int = 0


def normalise_blocks(blocks: Iterable[RawBlock], *, block_floor: float = 0.5) -> NormalisedBlocks:
    """Group blocks and compute the aggregate confidence.

    Text blocks are LINE blocks (WORD blocks when the engine emits no lines).
    The aggregate is the mean of text-block confidences; a document with no
    text falls back to the mean over every block, then to 0.0. Blocks under
    ``block_floor`` are kept and flagged.
    """
    ordered = list(blocks)
    by_id = {block.block_id: block for block in ordered}

    lines = [b for b in ordered if b.block_type is BlockType.LINE]
    if not lines:
        lines = [b for b in ordered if b.block_type is BlockType.WORD]

    result = NormalisedBlocks()
    for block in lines:
        below = block.confidence < block_floor
        result.flagged_blocks += int(below)
        result.text_blocks.append(
            TextBlock(
                text=block.text,
                confidence=block.confidence,
                page=block.page,
                geometry=block.geometry,
                below_threshold=below,
            )
        )

    for block in ordered:
        if block.block_type is BlockType.TABLE:
            result.tables.append(_build_table(block, by_id))
        elif block.block_type is BlockType.KEY:
            pair = _build_pair(block, by_id, block_floor)
            result.flagged_blocks += int(pair.below_threshold)
            result.key_values.append(pair)

    if result.text_blocks:
        scores = [tb.confidence for tb in result.text_blocks]
    else:
        scores = [b.confidence for b in ordered]
    result.confidence = round(sum(scores) / len(scores), 4) if scores else 0.0
    return result


def _text_of(block: RawBlock, by_id: Mapping[str, RawBlock]) -> str:
    if block.text:
        return block.text
    words = [
        by_id[child].text
        for child in block.related(CHILD)
        if child in by_id and by_id[child].block_type is BlockType.WORD
    ]
    return " ".join(word for word in words if word)


def _build_table(table: RawBlock, by_id: Mapping[str, RawBlock]) -> Table:
    cells: list[TableCell] = []
    for child_id in table.related(CHILD):
        cell = by_id.get(child_id)
        if cell is None or cell.block_type is not BlockType.CELL:
            continue
        cells.append(
            TableCell(
                row=cell.row_index or 1,
                column=cell.column_index or 1,
                text=_text_of(cell, by_id),
                confidence=cell.confidence,
            )
        )
    cells.sort(key=lambda c: (c.row, c.column))
    return Table(page=table.page, cells=tuple(cells), confidence=table.confidence)


def _build_pair(key: RawBlock, by_id: Mapping[str, RawBlock], block_floor: float) -> KeyValuePair:
    values = [by_id[v] for v in key.related(VALUE) if v in by_id]
    value_text = " ".join(_text_of(v, by_id) for v in values).strip()
    return KeyValuePair(
        key=_text_of(key, by_id),
        value=value_text,
        confidence=key.confidence,
        below_threshold=key.confidence < block_floor,
    )


__all__ = ["NormalisedBlocks", "normalise_blocks"]
