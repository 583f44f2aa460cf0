import importlib

import pytest
from click.testing import CliRunner

from reflib.cli import cli
from reflib.config import LibraryConfig
from reflib.errors import LookupFailure
from reflib.library import Library
from reflib.llm_analyzer import GeminiAnalyzer
from reflib.metadata_fetcher import CrossrefFetcher
from reflib.models import MetadataSource, PartialMetadata


@pytest.fixture
def paths(tmp_path, monkeypatch):
    for var in ("REFLIB_DB_PATH", "REFLIB_BLOB_DIR", "GEMINI_API_KEY", "GOOGLE_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("reflib.config.load_dotenv", lambda *args, **kwargs: False)
    return ['--db-path', str(tmp_path / 'library.db'), '--blob-dir', str(tmp_path / 'pdfs')]


@pytest.fixture
def runner():
    return CliRunner()


def _library(paths):
    return Library(LibraryConfig(db_path=paths[1], blob_dir=paths[3]))


def _add(runner, paths, title, *extra):
    result = runner.invoke(cli, [*paths, 'add', '--title', title, *extra])
    assert result.exit_code == 0, result.output
    return result


def _all(paths):
    with _library(paths) as lib:
        return lib.references.all()


def test_init_db(runner, paths, tmp_path):
    result = runner.invoke(cli, [*paths, 'init-db'])
    assert result.exit_code == 0
    assert "Library initialized" in result.output
    assert (tmp_path / 'library.db').exists()


def test_add_list_and_cite(runner, paths):
    result = _add(runner, paths, 'Deep Things', '--author', 'Jane Doe', '--year', '2024', '--journal', 'Nature')
    assert "Doe2024" in result.output

    listing = runner.invoke(cli, [*paths, 'list'])
    assert "Deep Things" in listing.output
    assert "1 reference(s)" in listing.output

    ref_id = _all(paths)[0].id
    apa = runner.invoke(cli, [*paths, 'cite', ref_id[:6], '--format', 'apa'])
    assert apa.output.strip() == "Doe, Jane (2024). Deep Things. Nature."

    bib = runner.invoke(cli, [*paths, 'cite', ref_id])
    assert bib.output.startswith("@article{Doe2024,")


def test_list_search_and_empty(runner, paths):
    _add(runner, paths, 'Alpha paper')
    _add(runner, paths, 'Beta paper')
    result = runner.invoke(cli, [*paths, 'list', '--search', 'beta'])
    assert "Beta paper" in result.output
    assert "Alpha paper" not in result.output
    result = runner.invoke(cli, [*paths, 'list', '--folder', 'favorites'])
    assert "No references found." in result.output


def test_update_and_show(runner, paths):
    _add(runner, paths, 'Paper')
    ref_id = _all(paths)[0].id
    result = runner.invoke(cli, [*paths, 'update', ref_id, '--set', 'tags=a; b', '--notes', 'read later'])
    assert result.exit_code == 0, result.output
    shown = runner.invoke(cli, [*paths, 'show', ref_id])
    assert "read later" in shown.output
    assert "a; b" in shown.output


def test_update_rejects_locked_field(runner, paths):
    _add(runner, paths, 'Paper')
    ref_id = _all(paths)[0].id
    result = runner.invoke(cli, [*paths, 'update', ref_id, '--set', 'pdf_id=x'])
    assert result.exit_code == 1
    assert "cannot be edited" in result.output


def test_delete_reports_missing_id(runner, paths):
    _add(runner, paths, 'One')
    _add(runner, paths, 'Two')
    ids = [r.id for r in _all(paths)]
    result = runner.invoke(cli, [*paths, 'delete', '--yes', ids[0], 'missing-id', ids[1]])
    assert result.exit_code == 1
    assert "Deleted 2 of 3 reference(s)" in result.output
    assert "Not found: missing-id" in result.output
    assert _all(paths) == []


def test_show_unknown_reference(runner, paths):
    result = runner.invoke(cli, [*paths, 'show', 'nope'])
    assert result.exit_code == 1
    assert "does not exist" in result.output


def test_collection_lifecycle(runner, paths):
    _add(runner, paths, 'Paper')
    ref_id = _all(paths)[0].id
    with _library(paths) as lib:
        collection_id = lib.collections.create("Thesis").id

    result = runner.invoke(cli, [*paths, 'collection', 'add', collection_id, ref_id])
    assert result.exit_code == 0, result.output
    listing = runner.invoke(cli, [*paths, 'collection', 'list'])
    assert "Thesis (1)" in listing.output

    result = runner.invoke(cli, [*paths, 'collection', 'delete', collection_id])
    assert "removed from 1 reference(s)" in result.output
    assert _all(paths)[0].collection_ids == []


def test_collection_create_rejects_blank_name(runner, paths):
    result = runner.invoke(cli, [*paths, 'collection', 'create', '  '])
    assert result.exit_code == 1
    assert "must not be empty" in result.output


def test_import_doi(runner, paths, mocker):
    mocker.patch.object(CrossrefFetcher, 'fetch', return_value=PartialMetadata(
        source=MetadataSource.DOI, title="From Crossref", authors=["Doe, Jane"], year=2020, doi="10.1234/x"))
    result = runner.invoke(cli, [*paths, 'import-doi', '10.1234/x'])
    assert result.exit_code == 0, result.output
    assert "Doe2020: From Crossref" in result.output


def test_import_doi_failure(runner, paths, mocker):
    mocker.patch.object(CrossrefFetcher, 'fetch', side_effect=LookupFailure("HTTP 404"))
    result = runner.invoke(cli, [*paths, 'import-doi', '10.1234/x'])
    assert result.exit_code == 1
    assert "DOI lookup failed" in result.output
    assert _all(paths) == []


def test_import_pdf_and_attach(runner, paths, tmp_path, make_pdf):
    pdf_path = tmp_path / 'paper.pdf'
    pdf_path.write_bytes(make_pdf(pages=["A readable page"]))
    result = runner.invoke(cli, [*paths, 'import-pdf', '--no-doi-lookup', str(pdf_path)])
    assert result.exit_code == 0, result.output
    reference = _all(paths)[0]
    assert reference.title == "paper"
    assert reference.has_pdf

    out = tmp_path / 'copy.pdf'
    result = runner.invoke(cli, [*paths, 'save-pdf', reference.id, str(out)])
    assert result.exit_code == 0, result.output
    assert out.read_bytes() == pdf_path.read_bytes()


def test_import_bad_pdf(runner, paths, tmp_path):
    bad = tmp_path / 'bad.pdf'
    bad.write_bytes(b"not a pdf")
    result = runner.invoke(cli, [*paths, 'import-pdf', str(bad)])
    assert result.exit_code == 1
    assert "Could not read PDF" in result.output


def test_import_bib_and_export(runner, paths, tmp_path):
    bib = tmp_path / 'in.bib'
    bib.write_text("@article{Roe2001,\n  title = {Imported},\n  author = {Roe, Rick},\n  year = {2001}\n}\n",
                   encoding='utf-8')
    result = runner.invoke(cli, [*paths, 'import-bib', str(bib)])
    assert "Imported 1 of 1 entries." in result.output

    out = tmp_path / 'out.bib'
    result = runner.invoke(cli, [*paths, 'export-bibtex', '--output', str(out)])
    assert result.exit_code == 0, result.output
    assert out.read_text(encoding='utf-8') == (
        "@article{Roe2001,\n  title={Imported},\n  author={Roe, Rick},\n  year={2001}\n}\n"
    )


def test_favorite(runner, paths):
    _add(runner, paths, 'Paper')
    ref_id = _all(paths)[0].id
    result = runner.invoke(cli, [*paths, 'favorite', ref_id])
    assert result.exit_code == 0
    assert "Updated 1 of 1 reference(s)" in result.output
    assert _all(paths)[0].favorite is True
    runner.invoke(cli, [*paths, 'favorite', '--off', ref_id])
    assert _all(paths)[0].favorite is False


@pytest.mark.parametrize("module", [
    "reflib", "reflib.cli", "reflib.library", "reflib.collection_store", "reflib.reference_store",
])
def test_modules_import(module):
    assert importlib.import_module(module)


def test_command_names():
    assert {"import-pdf", "evaluate-novelty", "export-bibtex", "collection"} <= set(cli.commands)
    assert {"create", "rename", "recolor", "delete", "list", "add", "remove"} <= set(cli.commands["collection"].commands)


def test_collection_recolor(runner, paths):
    with _library(paths) as lib:
        collection_id = lib.collections.create("Thesis").id
    result = runner.invoke(cli, [*paths, 'collection', 'recolor', collection_id, '#22c55e'])
    assert result.exit_code == 0, result.output
    assert "is now #22c55e" in result.output
    with _library(paths) as lib:
        assert lib.collections.get(collection_id).color == '#22c55e'

    result = runner.invoke(cli, [*paths, 'collection', 'recolor', 'missing', '#000000'])
    assert result.exit_code == 1


def test_evaluate_novelty_from_text(runner, paths, mocker):
    evaluate = mocker.patch.object(GeminiAnalyzer, 'evaluate_novelty', return_value="7. Desk-reject")
    result = runner.invoke(cli, [*paths, 'evaluate-novelty', '--text', 'Our abstract'])
    assert result.exit_code == 0, result.output
    assert "7. Desk-reject" in result.output
    evaluate.assert_called_once_with('Our abstract')


def test_evaluate_novelty_from_reference(runner, paths, mocker):
    _add(runner, paths, 'Deep Things', '--author', 'Jane Doe', '--year', '2024')
    ref_id = _all(paths)[0].id
    evaluate = mocker.patch.object(GeminiAnalyzer, 'evaluate_novelty', return_value="Borderline")
    result = runner.invoke(cli, [*paths, 'evaluate-novelty', '--ref', ref_id[:8]])
    assert result.exit_code == 0, result.output
    assert evaluate.call_args.args[0].startswith("Title: Deep Things\nAuthors: Doe, Jane\nYear: 2024")


def test_evaluate_novelty_without_key(runner, paths):
    result = runner.invoke(cli, [*paths, 'evaluate-novelty', '--text', 'Our abstract'])
    assert result.exit_code == 1
    assert "API key was rejected" in result.output


def test_evaluate_novelty_needs_one_input(runner, paths):
    result = runner.invoke(cli, [*paths, 'evaluate-novelty'])
    assert result.exit_code == 2
    result = runner.invoke(cli, [*paths, 'evaluate-novelty', '--text', 'a', '--ref', 'b'])
    assert result.exit_code == 2
