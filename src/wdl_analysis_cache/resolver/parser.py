"""Outline extraction for WDL documents.

The resolver only needs a document's imports and the interface of its tasks
and workflows. ``WdlOutlineParser`` extracts exactly that with regular
expressions and brace matching; it does not check WDL syntax or types.
"""

import re
from typing import Protocol

from pydantic import BaseModel, Field

from ..storage.models import ParameterInfo, Position, SourceRange, TaskInfo, TypeInfo, WorkflowSymbol

IMPORT_PATTERN = re.compile(
    r"""^[ \t]*import\s+(?P<quote>["'])(?P<path>[^"']+)(?P=quote)(?:\s+as\s+(?P<alias>\w+))?""",
    re.MULTILINE,
)
TASK_PATTERN = re.compile(r"^[ \t]*task\s+(?P<name>[A-Za-z_]\w*)\s*\{", re.MULTILINE)
WORKFLOW_PATTERN = re.compile(r"^[ \t]*workflow\s+(?P<name>[A-Za-z_]\w*)\s*\{", re.MULTILINE)
SECTION_PATTERN = r"(?<![\w.]){name}\s*\{{"
DECLARATION_PATTERN = re.compile(
    r"^(?P<type>[A-Z][\w\[\], ]*?[?+]*)\s+(?P<name>[A-Za-z_]\w*)\s*(?:=\s*(?P<default>.+))?$",
)
META_DESCRIPTION_PATTERN = re.compile(r"""\bdescription\s*:\s*["'](?P<text>[^"']*)["']""")
PARAMETER_META_PATTERN = re.compile(
    r"""^\s*(?P<name>[A-Za-z_]\w*)\s*:\s*(?:["'](?P<text>[^"']*)["']|\{[^}]*?description\s*:\s*["'](?P<nested>[^"']*)["'])""",
    re.MULTILINE,
)
COMMENT_PATTERN = re.compile(r"#[^\n]*")


class ImportDeclaration(BaseModel):
    path: str
    alias: str | None = None
    range: SourceRange | None = None


class TaskDeclaration(BaseModel):
    name: str
    inputs: list[ParameterInfo] = Field(default_factory=list)
    outputs: list[ParameterInfo] = Field(default_factory=list)
    description: str | None = None
    range: SourceRange


class WorkflowDeclaration(BaseModel):
    name: str
    inputs: list[ParameterInfo] = Field(default_factory=list)
    outputs: list[ParameterInfo] = Field(default_factory=list)
    range: SourceRange


class DocumentOutline(BaseModel):
    imports: list[ImportDeclaration] = Field(default_factory=list)
    tasks: list[TaskDeclaration] = Field(default_factory=list)
    workflows: list[WorkflowDeclaration] = Field(default_factory=list)


class DocumentParser(Protocol):
    def parse(self, text: str) -> DocumentOutline: ...


def to_task_info(declaration: TaskDeclaration, source_file: str) -> TaskInfo:
    """Build the importer-facing description of a parsed task."""
    return TaskInfo(
        name=declaration.name,
        inputs=[param.model_copy() for param in declaration.inputs],
        outputs=[param.model_copy() for param in declaration.outputs],
        description=declaration.description,
        source_file=source_file,
        range=declaration.range,
    )


def to_workflow_symbol(declaration: WorkflowDeclaration, source_file: str) -> WorkflowSymbol:
    return WorkflowSymbol(
        name=declaration.name,
        inputs=declaration.inputs,
        outputs=declaration.outputs,
        source_file=source_file,
        range=declaration.range,
    )


def _position(text: str, offset: int) -> Position:
    line = text.count("\n", 0, offset)
    column = offset - (text.rfind("\n", 0, offset) + 1)
    return Position(line=line, column=column, offset=offset)


def _matching_brace(text: str, open_index: int) -> int:
    """Index of the brace closing the one at ``open_index`` (or end of text)."""
    depth = 0
    for index in range(open_index, len(text)):
        char = text[index]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return len(text) - 1


def _section_body(body: str, name: str) -> str | None:
    match = re.search(SECTION_PATTERN.format(name=name), body)
    if not match:
        return None
    open_index = match.end() - 1
    return body[open_index + 1:_matching_brace(body, open_index)]


def _split_top_level(block: str) -> list[str]:
    """Split a section body into declarations, joining lines inside brackets."""
    declarations = []
    current = ""
    depth = 0
    for line in block.splitlines():
        stripped = line.strip()
        if not stripped and depth == 0:
            continue
        current = f"{current} {stripped}".strip() if current else stripped
        depth += stripped.count("[") + stripped.count("(") + stripped.count("{")
        depth -= stripped.count("]") + stripped.count(")") + stripped.count("}")
        if depth <= 0:
            declarations.append(current)
            current = ""
            depth = 0
    if current:
        declarations.append(current)
    return declarations


def _parse_declarations(block: str | None, descriptions: dict[str, str]) -> list[ParameterInfo]:
    if not block:
        return []

    parameters = []
    for declaration in _split_top_level(block):
        match = DECLARATION_PATTERN.match(declaration)
        if not match:
            continue
        type_name = match.group("type").strip()
        optional = type_name.endswith("?")
        default = match.group("default")
        parameters.append(ParameterInfo(
            name=match.group("name"),
            type=TypeInfo(name=type_name.rstrip("?"), optional=optional),
            optional=optional or default is not None,
            default_value=default.strip() if default else None,
            description=descriptions.get(match.group("name")),
        ))
    return parameters


def _parameter_descriptions(body: str) -> dict[str, str]:
    block = _section_body(body, "parameter_meta")
    if not block:
        return {}
    return {
        match.group("name"): match.group("text") or match.group("nested")
        for match in PARAMETER_META_PATTERN.finditer(block)
        if match.group("text") or match.group("nested")
    }


class WdlOutlineParser:
    """Regex-based extraction of imports, tasks and workflows from WDL text."""

    def parse(self, text: str) -> DocumentOutline:
        # Blank out comments so braces inside them do not affect matching
        source = COMMENT_PATTERN.sub(lambda match: " " * len(match.group()), text)
        outline = DocumentOutline()

        for match in IMPORT_PATTERN.finditer(source):
            outline.imports.append(ImportDeclaration(
                path=match.group("path"),
                alias=match.group("alias"),
                range=SourceRange(start=_position(text, match.start("quote")), end=_position(text, match.end())),
            ))

        for match in TASK_PATTERN.finditer(source):
            open_index = match.end() - 1
            close_index = _matching_brace(source, open_index)
            body = source[open_index + 1:close_index]
            descriptions = _parameter_descriptions(body)

            meta = _section_body(body, "meta")
            description_match = META_DESCRIPTION_PATTERN.search(meta) if meta else None

            outline.tasks.append(TaskDeclaration(
                name=match.group("name"),
                inputs=_parse_declarations(_section_body(body, "input"), descriptions),
                outputs=_parse_declarations(_section_body(body, "output"), descriptions),
                description=description_match.group("text") if description_match else None,
                range=SourceRange(
                    start=_position(text, match.start("name")),
                    end=_position(text, close_index + 1),
                ),
            ))

        for match in WORKFLOW_PATTERN.finditer(source):
            open_index = match.end() - 1
            close_index = _matching_brace(source, open_index)
            body = source[open_index + 1:close_index]
            outline.workflows.append(WorkflowDeclaration(
                name=match.group("name"),
                inputs=_parse_declarations(_section_body(body, "input"), {}),
                outputs=_parse_declarations(_section_body(body, "output"), {}),
                range=SourceRange(
                    start=_position(text, match.start("name")),
                    end=_position(text, close_index + 1),
                ),
            ))

        return outline
