from codex_context.models import Chunk, ImportRef, SymbolRef
from codex_context.services.subchunk_service import (
    SUBCHUNK_MARKER,
    SubChunker,
    detect_section_type,
    is_natural_boundary,
    section_priority,
    split_chunks,
)


def _chunk(content: str, **overrides) -> Chunk:
    data = dict(
        id="service_abcd1234_1-200",
        content=content,
        file_path="/repo/service.ts",
        relative_path="service.ts",
        start_line=1,
        end_line=len(content.split("\n")),
        language="typescript",
        chunk_type="mixed",
    )
    data.update(overrides)
    return Chunk(**data)


def _service_source() -> str:
    lines = ["import { Client } from './client';", ""]
    for index in range(12):
        lines.append(f"export function handler{index}(request: Request) {{")
        for step in range(4):
            lines.append(f"  const value{step} = Client.call('handler{index}', {step});")
        lines.append("  return value0;")
        lines.append("}")
        lines.append("")
    return "\n".join(lines)


def test_detect_section_type():
    assert detect_section_type("import { a } from './a';", 0) == "import"
    assert detect_section_type("export const b = 1;", 0) == "export"
    assert detect_section_type("type Id = string;", 0) == "interface"
    assert detect_section_type("const LIMIT = 5;", 0) == "header"
    assert detect_section_type("class Store {", 1) == "class"
    assert detect_section_type("function run() {", 1) == "function"
    assert detect_section_type("// note", 0) == "comment"
    assert detect_section_type("x += 1;", 2) == "other"


def test_natural_boundaries():
    assert is_natural_boundary("}", 0)
    assert is_natural_boundary("", 0)
    assert is_natural_boundary("export function a() {", 1)
    assert not is_natural_boundary("}", 1)


def test_section_priority_caps_at_ten():
    symbols = [SymbolRef(f"s{i}", "function", i) for i in range(5)]

    assert section_priority("import", symbols) == 10
    assert section_priority("function", symbols) == 8
    assert section_priority("other", []) == 1


def test_small_chunks_pass_through_unchanged():
    chunk = _chunk("const a = 1;\n")

    assert SubChunker().split(chunk) == [chunk]


def test_large_chunk_is_split_with_header_context_and_full_coverage():
    source = _service_source()
    chunk = _chunk(
        source,
        imports=[ImportRef("./client", ("Client",), 1)],
        symbols=[SymbolRef(f"handler{i}", "function", 3 + i * 8) for i in range(12)],
    )
    splitter = SubChunker()

    parts = splitter.split(chunk)

    assert len(parts) > 1
    for index, part in enumerate(parts):
        assert part.id == f"{chunk.id}_sub{index}"
        assert part.content.startswith("import { Client } from './client';")
        assert SUBCHUNK_MARKER in part.content
        assert part.imports == [ImportRef("./client", ("Client",), 1)]
        assert "Client" in part.references
    symbol_names = [name for part in parts for name in part.symbol_names()]
    assert set(symbol_names) == {f"handler{i}" for i in range(12)}
    report = splitter.validate(chunk, parts)
    assert not any("not covered" in issue for issue in report.issues)
    assert report.metrics["context_preservation"] == 1.0


def test_split_chunks_preserves_order():
    small = _chunk("const a = 1;", id="first")
    large = _chunk(_service_source(), id="second")

    result = split_chunks([small, large])

    assert result[0] is small
    assert all(part.id.startswith("second_sub") for part in result[1:])


def test_split_chunks_validates_only_split_chunks(monkeypatch):
    splitter = SubChunker()
    checked = []
    original_validate = splitter.validate

    def recording_validate(original, parts):
        checked.append(original.id)
        return original_validate(original, parts)

    monkeypatch.setattr(splitter, "validate", recording_validate)

    split_chunks([_chunk("const a = 1;", id="first"), _chunk(_service_source(), id="second")], splitter)

    assert checked == ["second"]
