import logging
from concurrent.futures import as_completed
from pathlib import Path

import click
from tqdm import tqdm

from .bibtex_formatter import export_bibtex, parse_bibtex, to_apa, to_bibtex
from .config import LibraryConfig
from .errors import NotFound, ReflibError
from .library import Library
from .models import Folder, MetadataSource, PartialMetadata
from .reconcile import merge

# ANSI escape codes for colors
RESET = "\033[0m"
RED = "\033[91m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
CYAN = "\033[96m"
WHITE = "\033[97m"

FOLDER_CHOICES = {
    "all": Folder.ALL_PAPERS,
    "recent": Folder.RECENTLY_ADDED,
    "favorites": Folder.FAVORITES,
}

LIST_FIELDS = {"authors", "editors", "tags", "collection_ids"}


def _open_library(ctx) -> Library:
    return Library(ctx.obj["config"])


def _fail(ctx, error: ReflibError):
    click.echo(f"{RED}{error.user_message}: {error}{RESET}", err=True)
    ctx.exit(1)


def _resolve_id(lib: Library, ref_id: str) -> str:
    """Accepts a full reference id or a unique prefix of one."""
    if lib.references.exists(ref_id):
        return ref_id
    matches = [r.id for r in lib.references.all() if r.id.startswith(ref_id)]
    if len(matches) == 1:
        return matches[0]
    raise NotFound("reference", ref_id)


def _short(ref_id: str) -> str:
    return ref_id[:8]


def _echo_reference_line(reference):
    authors = "; ".join(reference.authors[:3]) + (" et al." if len(reference.authors) > 3 else "")
    star = f"{YELLOW}*{RESET}" if reference.favorite else " "
    pdf = f"{CYAN}[PDF]{RESET}" if reference.has_pdf else ""
    click.echo(f"{star} {BLUE}{_short(reference.id)}{RESET} {WHITE}{reference.citation_key or '-'}{RESET} "
               f"{reference.title or '(untitled)'} ({reference.year or 'n.d.'}) {authors} {pdf}")


def _parse_assignment(assignment: str):
    if "=" not in assignment:
        raise click.BadParameter(f"Expected FIELD=VALUE, got '{assignment}'")
    key, value = assignment.split("=", 1)
    key = key.strip()
    if key in LIST_FIELDS:
        return key, [v.strip() for v in value.split(";") if v.strip()]
    if key == "favorite":
        return key, value.strip().lower() in ("1", "true", "yes", "y")
    return key, value


@click.group()
@click.option('--db-path', type=click.Path(dir_okay=False),
              help='Path to the SQLite database file.')
@click.option('--blob-dir', type=click.Path(file_okay=False),
              help='Directory that stores attached PDFs.')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging.')
@click.pass_context
def cli(ctx, db_path, blob_dir, verbose):
    """A command-line tool for managing your research library."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = LibraryConfig.from_env(db_path=db_path, blob_dir=blob_dir)


@cli.command("init-db")
@click.pass_context
def init_db_command(ctx):
    """Creates the library database and PDF directory."""
    lib = _open_library(ctx)
    try:
        click.echo(f"{GREEN}Library initialized at {Path(lib.config.db_path).resolve()}{RESET}")
    finally:
        lib.close()


@cli.command("add")
@click.option('--title', required=True)
@click.option('--author', 'authors', multiple=True, help='Repeat for each author ("Family, Given").')
@click.option('--year', type=int)
@click.option('--journal')
@click.option('--doi')
@click.option('--type', 'ref_type', help='e.g. "Journal Article", "Book".')
@click.option('--tag', 'tags', multiple=True)
@click.pass_context
def add_command(ctx, title, authors, year, journal, doi, ref_type, tags):
    """Adds a reference by hand."""
    partial = PartialMetadata(
        source=MetadataSource.MANUAL, title=title, authors=list(authors) or None, year=year,
        journal=journal, doi=doi, type=ref_type, tags=list(tags) or None,
    )
    lib = _open_library(ctx)
    try:
        reference = lib.references.create(merge(None, partial))
        click.echo(f"{GREEN}Added {_short(reference.id)} ({reference.citation_key}){RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@cli.command("import-pdf")
@click.argument('pdf_files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--no-doi-lookup', is_flag=True, help='Do not query Crossref for DOIs found in the PDFs.')
@click.pass_context
def import_pdf_command(ctx, pdf_files, no_doi_lookup):
    """Imports one or more PDFs, each as a new reference."""
    lib = _open_library(ctx)
    failures = 0
    try:
        futures = {
            lib.submit(lib.enricher.import_pdf, Path(path).read_bytes(), Path(path).name,
                       lookup_doi=not no_doi_lookup): path
            for path in pdf_files
        }
        for future in tqdm(as_completed(futures), total=len(futures), desc="Importing PDFs",
                           disable=len(futures) < 2):
            path = futures[future]
            try:
                outcome = future.result()
            except ReflibError as e:
                failures += 1
                click.echo(f"{RED}{Path(path).name}: {e.user_message} ({e}){RESET}", err=True)
                continue
            reference = outcome.reference
            click.echo(f"{GREEN}Imported {Path(path).name} as {_short(reference.id)} "
                       f"({reference.title[:60]}){RESET}")
            if outcome.follow_up_error:
                click.echo(f"{YELLOW}  {outcome.follow_up_error.user_message}: {outcome.follow_up_error}{RESET}")
    finally:
        lib.close()
    if failures:
        ctx.exit(1)


@cli.command("import-doi")
@click.argument('doi')
@click.pass_context
def import_doi_command(ctx, doi):
    """Creates a reference from a DOI lookup."""
    lib = _open_library(ctx)
    try:
        reference = lib.enricher.import_doi(doi).reference
        click.echo(f"{GREEN}Imported {reference.citation_key}: {reference.title}{RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@cli.command("import-bib")
@click.argument('bibtex_file', type=click.Path(exists=True, dir_okay=False, readable=True))
@click.pass_context
def import_bib_command(ctx, bibtex_file):
    """Imports references from a BibTeX file."""
    content = Path(bibtex_file).read_text(encoding='utf-8')
    partials = parse_bibtex(content)
    if not partials:
        click.echo(f"{YELLOW}No entries found in {bibtex_file}.{RESET}")
        return
    lib = _open_library(ctx)
    imported = 0
    try:
        for partial in partials:
            try:
                lib.references.create(merge(None, partial))
                imported += 1
            except ReflibError as e:
                click.echo(f"{RED}Skipped '{(partial.title or '')[:50]}': {e}{RESET}", err=True)
        click.echo(f"{GREEN}Imported {imported} of {len(partials)} entries.{RESET}")
    finally:
        lib.close()


def _run_enrichment(ctx, action, ref_id, label):
    lib = _open_library(ctx)
    try:
        outcome = action(lib)(_resolve_id(lib, ref_id))
        if outcome.applied:
            click.echo(f"{GREEN}{label} applied to {_short(outcome.reference.id)}{RESET}")
        else:
            click.echo(f"{YELLOW}{label} discarded{RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@cli.command("refresh-doi")
@click.argument('ref_id')
@click.pass_context
def refresh_doi_command(ctx, ref_id):
    """Re-fetches DOI metadata and overwrites the fields it supplies."""
    _run_enrichment(ctx, lambda lib: lib.enricher.refresh_from_doi, ref_id, "DOI metadata")


@cli.command("enrich-pdf")
@click.argument('ref_id')
@click.pass_context
def enrich_pdf_command(ctx, ref_id):
    """Fills empty fields from the attached PDF."""
    _run_enrichment(ctx, lambda lib: lib.enricher.enrich_from_pdf, ref_id, "PDF metadata")


@cli.command("analyze")
@click.argument('ref_id')
@click.pass_context
def analyze_command(ctx, ref_id):
    """Generates a technical review of the attached PDF with Gemini."""
    _run_enrichment(ctx, lambda lib: lib.enricher.analyze, ref_id, "AI analysis")


@cli.command("evaluate-novelty")
@click.option('--ref', 'ref_id', help='Evaluate a library reference from its metadata and abstract.')
@click.option('--pdf', 'pdf_file', type=click.Path(exists=True, dir_okay=False),
              help='Evaluate a PDF that is not in the library.')
@click.option('--text', help='Evaluate pasted text such as an abstract.')
@click.pass_context
def evaluate_novelty_command(ctx, ref_id, pdf_file, text):
    """Asks Gemini for an editor-style novelty assessment. Nothing is saved."""
    given = [value for value in (ref_id, pdf_file, text) if value]
    if len(given) != 1:
        raise click.UsageError("Pass exactly one of --ref, --pdf or --text.")
    lib = _open_library(ctx)
    try:
        if ref_id:
            evaluation = lib.enricher.evaluate_novelty(_resolve_id(lib, ref_id))
        elif pdf_file:
            evaluation = lib.enricher.evaluate_pdf_novelty(Path(pdf_file).read_bytes())
        else:
            evaluation = lib.analyzer.evaluate_novelty(text)
        click.echo(f"{BLUE}--- Novelty evaluation ---{RESET}")
        click.echo(evaluation)
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@cli.command("attach-pdf")
@click.argument('ref_id')
@click.argument('pdf_file', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def attach_pdf_command(ctx, ref_id, pdf_file):
    """Attaches (or replaces) the PDF of a reference."""
    lib = _open_library(ctx)
    try:
        reference = lib.references.attach_pdf(_resolve_id(lib, ref_id), Path(pdf_file).read_bytes(),
                                              name=Path(pdf_file).name)
        click.echo(f"{GREEN}Attached {Path(pdf_file).name} to {_short(reference.id)}{RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@cli.command("detach-pdf")
@click.argument('ref_id')
@click.pass_context
def detach_pdf_command(ctx, ref_id):
    """Removes the attached PDF of a reference."""
    lib = _open_library(ctx)
    try:
        reference = lib.references.detach_pdf(_resolve_id(lib, ref_id))
        click.echo(f"{GREEN}Detached PDF from {_short(reference.id)}{RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@cli.command("save-pdf")
@click.argument('ref_id')
@click.argument('output', type=click.Path(dir_okay=False, writable=True))
@click.pass_context
def save_pdf_command(ctx, ref_id, output):
    """Writes the attached PDF of a reference to OUTPUT."""
    lib = _open_library(ctx)
    try:
        blob = lib.references.get_pdf(_resolve_id(lib, ref_id))
        Path(output).write_bytes(blob.payload)
        click.echo(f"{GREEN}Saved {blob.name or blob.id} to {output}{RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@cli.command("list")
@click.option('--folder', type=click.Choice(list(FOLDER_CHOICES)), default='all', show_default=True)
@click.option('--collection', 'collection_id', help='Only references in this collection.')
@click.option('--search', default='', help='Case-insensitive text search.')
@click.option('--limit', type=int, help='Show at most this many references.')
@click.pass_context
def list_command(ctx, folder, collection_id, search, limit):
    """Lists references."""
    lib = _open_library(ctx)
    try:
        result = lib.references.query(folder=FOLDER_CHOICES[folder], collection_id=collection_id,
                                      search=search, limit=limit)
        if not result.count:
            click.echo(f"{YELLOW}No references found.{RESET}")
            return
        for reference in result:
            _echo_reference_line(reference)
        click.echo(f"{CYAN}{result.count} reference(s){RESET}")
    finally:
        lib.close()


@cli.command("show")
@click.argument('ref_id')
@click.pass_context
def show_command(ctx, ref_id):
    """Shows every field of a reference."""
    lib = _open_library(ctx)
    try:
        reference = lib.references.get(_resolve_id(lib, ref_id))
        data = reference.model_dump(exclude={"technical_review"})
        for key, value in data.items():
            if value in (None, "", []):
                continue
            if isinstance(value, list):
                value = "; ".join(value)
            elif hasattr(value, "value"):
                value = value.value
            click.echo(f"  {WHITE}{key}:{RESET} {value}")
        review = reference.technical_review
        if review is not None and not review.is_empty():
            click.echo(f"{BLUE}--- Technical review ---{RESET}")
            for key, value in review.model_dump().items():
                if value:
                    click.echo(f"  {WHITE}{key}:{RESET} {value}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@cli.command("update")
@click.argument('ref_id')
@click.option('--set', 'assignments', multiple=True, metavar='FIELD=VALUE',
              help='Field to change; list fields take ";"-separated values.')
@click.option('--notes', help='Replace the personal notes.')
@click.pass_context
def update_command(ctx, ref_id, assignments, notes):
    """Edits fields of a reference."""
    fields = dict(_parse_assignment(a) for a in assignments)
    if notes is not None:
        fields["notes"] = notes
    if not fields:
        raise click.UsageError("Nothing to update; pass --set or --notes.")
    lib = _open_library(ctx)
    try:
        reference = lib.references.update(_resolve_id(lib, ref_id), fields)
        click.echo(f"{GREEN}Updated {_short(reference.id)}{RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@cli.command("favorite")
@click.argument('ref_ids', nargs=-1, required=True)
@click.option('--off', is_flag=True, help='Remove from favorites instead.')
@click.pass_context
def favorite_command(ctx, ref_ids, off):
    """Marks references as favorites."""
    lib = _open_library(ctx)
    try:
        ids = []
        for ref_id in ref_ids:
            try:
                ids.append(_resolve_id(lib, ref_id))
            except NotFound:
                ids.append(ref_id)
        result = lib.references.bulk_set_favorite(ids, not off)
        click.echo(f"{GREEN}Updated {len(result.succeeded)} of {result.attempted} reference(s){RESET}")
        for missing in result.missing:
            click.echo(f"{YELLOW}Not found: {missing}{RESET}")
        for ref_id, error in result.failed.items():
            click.echo(f"{RED}Failed {ref_id}: {error}{RESET}", err=True)
    finally:
        lib.close()
    if not result.ok:
        ctx.exit(1)


@cli.command("delete")
@click.argument('ref_ids', nargs=-1, required=True)
@click.confirmation_option(prompt='Are you sure you want to delete these references and their PDFs?')
@click.pass_context
def delete_command(ctx, ref_ids):
    """Deletes references together with their attached PDFs."""
    lib = _open_library(ctx)
    try:
        ids = []
        for ref_id in ref_ids:
            try:
                ids.append(_resolve_id(lib, ref_id))
            except NotFound:
                ids.append(ref_id)
        result = lib.references.bulk_delete(ids)
        click.echo(f"{GREEN}Deleted {len(result.succeeded)} of {result.attempted} reference(s){RESET}")
        for missing in result.missing:
            click.echo(f"{YELLOW}Not found: {missing}{RESET}")
        for ref_id, error in result.failed.items():
            click.echo(f"{RED}Failed {ref_id}: {error}{RESET}", err=True)
    finally:
        lib.close()
    if not result.ok:
        ctx.exit(1)


@cli.command("cite")
@click.argument('ref_id')
@click.option('--format', 'fmt', type=click.Choice(['bibtex', 'apa']), default='bibtex', show_default=True)
@click.pass_context
def cite_command(ctx, ref_id, fmt):
    """Prints a citation for one reference."""
    lib = _open_library(ctx)
    try:
        reference = lib.references.get(_resolve_id(lib, ref_id))
        click.echo(to_bibtex(reference) if fmt == 'bibtex' else to_apa(reference))
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@cli.command("export-bibtex")
@click.option('--output', '-o', type=click.Path(dir_okay=False, writable=True),
              help='Write to this file instead of stdout.')
@click.option('--folder', type=click.Choice(list(FOLDER_CHOICES)), default='all', show_default=True)
@click.option('--collection', 'collection_id')
@click.pass_context
def export_bibtex_command(ctx, output, folder, collection_id):
    """Exports references as a BibTeX file."""
    lib = _open_library(ctx)
    try:
        result = lib.references.query(folder=FOLDER_CHOICES[folder], collection_id=collection_id)
        content = export_bibtex(result.references)
    finally:
        lib.close()
    if output:
        Path(output).write_text(content, encoding='utf-8')
        click.echo(f"{GREEN}Exported {result.count} entries to {output}{RESET}")
    else:
        click.echo(content, nl=False)


@cli.group("collection")
def collection_group():
    """Manages collections."""


@collection_group.command("create")
@click.argument('name')
@click.option('--color', help='Display color, e.g. "#6366f1".')
@click.pass_context
def collection_create_command(ctx, name, color):
    lib = _open_library(ctx)
    try:
        collection = lib.collections.create(name, color)
        click.echo(f"{GREEN}Created collection '{collection.name}' ({collection.id}){RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@collection_group.command("rename")
@click.argument('collection_id')
@click.argument('name')
@click.pass_context
def collection_rename_command(ctx, collection_id, name):
    lib = _open_library(ctx)
    try:
        collection = lib.collections.rename(collection_id, name)
        click.echo(f"{GREEN}Renamed collection to '{collection.name}'{RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@collection_group.command("recolor")
@click.argument('collection_id')
@click.argument('color')
@click.pass_context
def collection_recolor_command(ctx, collection_id, color):
    lib = _open_library(ctx)
    try:
        collection = lib.collections.recolor(collection_id, color)
        click.echo(f"{GREEN}Collection '{collection.name}' is now {collection.color}{RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@collection_group.command("delete")
@click.argument('collection_id')
@click.pass_context
def collection_delete_command(ctx, collection_id):
    """Deletes a collection; its references stay in the library."""
    lib = _open_library(ctx)
    try:
        changed = lib.collections.delete(collection_id)
        click.echo(f"{GREEN}Deleted collection; removed from {len(changed)} reference(s){RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@collection_group.command("list")
@click.pass_context
def collection_list_command(ctx):
    lib = _open_library(ctx)
    try:
        collections = lib.collections.list_collections()
        if not collections:
            click.echo(f"{YELLOW}No collections.{RESET}")
        for collection in collections:
            count = lib.collections.count_references(collection.id)
            click.echo(f"{BLUE}{collection.id}{RESET} {collection.name} ({count})")
    finally:
        lib.close()


@collection_group.command("add")
@click.argument('collection_id')
@click.argument('ref_ids', nargs=-1, required=True)
@click.pass_context
def collection_add_command(ctx, collection_id, ref_ids):
    """Adds references to a collection."""
    lib = _open_library(ctx)
    try:
        for ref_id in ref_ids:
            lib.collections.add_reference(collection_id, _resolve_id(lib, ref_id))
        click.echo(f"{GREEN}Added {len(ref_ids)} reference(s){RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


@collection_group.command("remove")
@click.argument('collection_id')
@click.argument('ref_ids', nargs=-1, required=True)
@click.pass_context
def collection_remove_command(ctx, collection_id, ref_ids):
    """Removes references from a collection."""
    lib = _open_library(ctx)
    try:
        for ref_id in ref_ids:
            lib.collections.remove_reference(collection_id, _resolve_id(lib, ref_id))
        click.echo(f"{GREEN}Removed {len(ref_ids)} reference(s){RESET}")
    except ReflibError as e:
        _fail(ctx, e)
    finally:
        lib.close()


if __name__ == '__main__':
    cli()
