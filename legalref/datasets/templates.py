from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from .types import DatasetCorruptError, DatasetSource, NormalizedRecord
from .utils import Heading, make_record, normalize_text, parse_heading

log = structlog.get_logger()


@dataclass
class TemplateSection:
    heading: str
    level: int
    content: str
    path: list[str] = field(default_factory=list)


def parse_markdown_sections(markdown: str) -> list[TemplateSection]:
    """
    Splits markdown into one section per heading.

    A section's path lists the headings of its enclosing sections, outermost
    first, ending with its own heading. Text before the first heading and
    sections without body text are dropped.
    """
    sections: list[TemplateSection] = []
    history: list[Heading] = []
    current: TemplateSection | None = None
    lines: list[str] = []

    def close() -> None:
        if current is None:
            return
        current.content = normalize_text("\n".join(lines))
        if current.content:
            sections.append(current)

    for line in markdown.splitlines():
        heading = parse_heading(line)
        if heading is None:
            if current is not None:
                lines.append(line)
            continue
        close()
        while history and history[-1].level >= heading.level:
            history.pop()
        history.append(heading)
        current = TemplateSection(
            heading=heading.text,
            level=heading.level,
            content="",
            path=[h.text for h in history],
        )
        lines = []
    close()
    return sections


def parse_template_directory(
    root: Path | str, source: DatasetSource
) -> Iterator[NormalizedRecord]:
    """
    Walks every ``.md`` file below ``root`` in path order.

    Each file yields a ``template`` record with its full text, then one
    ``section`` record per heading section, categorized by the heading.

    Raises:
        DatasetCorruptError: ``root`` is not a directory.
    """
    root = Path(root)
    if not root.is_dir():
        raise DatasetCorruptError(f"template directory {root} does not exist")

    for path in sorted(root.rglob("*.md")):
        if not path.is_file():
            continue
        relative_path = path.relative_to(root).as_posix()
        template_name = path.stem
        try:
            markdown = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            log.warning(
                "skipping unreadable template", path=relative_path, error=str(e)
            )
            continue

        if normalize_text(markdown):
            yield make_record(
                source,
                f"{source.value}:template:{relative_path}",
                markdown,
                "template",
                section_path=[template_name],
                metadata={"fileName": path.name, "relativePath": relative_path},
            )

        for i, section in enumerate(parse_markdown_sections(markdown)):
            yield make_record(
                source,
                f"{source.value}:section:{relative_path}:{i}",
                section.content,
                "section",
                section_path=[template_name, *section.path],
                category=section.heading,
                metadata={
                    "fileName": path.name,
                    "relativePath": relative_path,
                    "headingLevel": section.level,
                    "sectionIndex": i,
                },
            )


def parse_bonterms(root: Path | str) -> Iterator[NormalizedRecord]:
    return parse_template_directory(root, DatasetSource.BONTERMS)


def parse_commonaccord(root: Path | str) -> Iterator[NormalizedRecord]:
    return parse_template_directory(root, DatasetSource.COMMONACCORD)
