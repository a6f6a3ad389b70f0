from codex_context.lexical import bm25_scores, bm25_tokenize, normalize_by_max


def test_tokenize_splits_identifiers_into_parts():
    tokens = bm25_tokenize("parseHTTPResponse(data) -> user_id")

    assert "parsehttpresponse" in tokens
    assert {"parse", "http", "response"} <= set(tokens)
    assert "data" in tokens
    assert "->" not in tokens


def test_bm25_prefers_matching_document():
    documents = [
        bm25_tokenize("function loadUser(id) { return db.find(id); }"),
        bm25_tokenize("function renderChart(points) { draw(points); }"),
        bm25_tokenize("const retries = 3;"),
    ]

    scores = bm25_scores(bm25_tokenize("render chart"), documents)

    assert scores.index(max(scores)) == 1


def test_bm25_empty_inputs():
    assert bm25_scores([], [["a"]]) == [0.0]
    assert bm25_scores(["a"], []) == []


def test_normalize_by_max():
    assert normalize_by_max([2.0, 1.0, 0.0]) == [1.0, 0.5, 0.0]
    assert normalize_by_max([0.0, -1.0]) == [0.0, 0.0]
    assert normalize_by_max([]) == []
