"""Fan-out of rows to the AI translation provider and merge of the results."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from tqdm import tqdm

from wordflow.ai_providers import BatchOptions, TranslationProvider
from wordflow.audit import AuditAction, AuditLog
from wordflow.document_store import chunked
from wordflow.errors import (
    ProviderNotConfiguredError,
    ResponseParseError,
    TranslationError,
    TranslationInProgressError,
    TranslationRateLimitedError,
)
from wordflow.glossary import GlossaryLibrary
from wordflow.models import PromptTemplate, Row, STATUS_DRAFT, now_iso
from wordflow.notifications import Notifier
from wordflow.pages import PageAggregate
from wordflow.prompts import RESULT_ERROR, merge_templates
from wordflow.row_store import RowStore
from wordflow.status_engine import empty_languages
from wordflow.templates import TemplateLibrary

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_KEY = "default"
DEFAULT_TRANSLATION_BATCH_SIZE = 50

ERROR_RATE_LIMITED = "rate_limited"
ERROR_PARSE = "parse"
ERROR_FAILED = "failed"


@dataclass
class TranslationReport:
    requested: int = 0
    succeeded: int = 0
    failed: int = 0
    groups: int = 0
    override: bool = False
    errors: List[str] = field(default_factory=list)
    error_types: List[str] = field(default_factory=list)


def group_by_prompt(rows: List[Row]) -> Dict[str, List[Row]]:
    """Partition rows by their prompt template id, or "default" when unset."""
    groups: Dict[str, List[Row]] = {}
    for row in rows:
        groups.setdefault(row.prompt_id or DEFAULT_PROMPT_KEY, []).append(row)
    return groups


def _template_dict(template: Optional[PromptTemplate]) -> Optional[Dict[str, Any]]:
    if template is None:
        return None
    return {"id": template.id, "name": template.name, "prompt": template.prompt}


def _error_type(exc: Exception) -> str:
    if isinstance(exc, TranslationRateLimitedError):
        return ERROR_RATE_LIMITED
    if isinstance(exc, ResponseParseError):
        return ERROR_PARSE
    return ERROR_FAILED


class TranslationQueue:
    """
    Translates the rows of a project with one provider call per batch.

    Only one run may be outstanding at a time; ``is_translating`` is always
    reset when a run ends, whatever the outcome.
    """

    def __init__(self, row_store: RowStore, pages: PageAggregate, provider: TranslationProvider,
                 templates: TemplateLibrary, glossary: GlossaryLibrary, notifier: Notifier,
                 audit: Optional[AuditLog] = None, user=None,
                 batch_size: int = DEFAULT_TRANSLATION_BATCH_SIZE, source_language: str = "en"):
        self.row_store = row_store
        self.pages = pages
        self.provider = provider
        self.templates = templates
        self.glossary = glossary
        self.notifier = notifier
        self.audit = audit
        self.user = user
        self.batch_size = batch_size
        self.source_language = source_language
        self.is_translating = False

    async def translate(self, rows: List[Row], template: Dict[str, str], target_languages: List[str],
                        glossary_terms: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Translate ``rows`` and return one result per row, keyed by row id.

        Rows are sent in batches of ``batch_size``. A batch that fails turns
        into error results for its rows; the remaining batches still run.
        A missing provider configuration stops the whole call.
        """
        items = [{"id": row.id, "text": row.source_text, "context": row.context} for row in rows]
        options = BatchOptions(target_languages=list(target_languages), template=template,
                               source_language=self.source_language, glossary_terms=glossary_terms)
        results: List[Dict[str, Any]] = []
        for batch in chunked(items, self.batch_size):
            try:
                results.extend(await self.provider.generate_batch(batch, options))
            except ProviderNotConfiguredError:
                raise
            except TranslationError as e:
                logger.error("Batch of %d item(s) failed: %s", len(batch), e)
                results.extend({"id": item["id"], "translations": {}, "status": RESULT_ERROR,
                                "error": str(e), "error_type": _error_type(e)} for item in batch)
        return results

    def resolve_scope(self, project_id: str, page_id: Optional[str] = None) -> Tuple[List[Row], bool]:
        """
        Rows to translate and whether existing text may be overwritten.

        With a selection, the selected rows are retranslated regardless of
        content. Without one, only rows of the current page with at least one
        empty target cell are taken, and only the empty cells get filled.
        """
        project = self.row_store.get_project(project_id)
        targets = project.target_languages if project else []
        selected = self.row_store.selected_row_ids(project_id)
        if selected:
            by_id = {row.id: row for row in self.row_store.all_rows(project_id)}
            return [by_id[row_id] for row_id in selected if row_id in by_id], True
        rows = self.pages.current_rows(project_id, page_id)
        return [row for row in rows if empty_languages(row, targets)], False

    async def translate_project(self, project_id: str, page_id: Optional[str] = None) -> TranslationReport:
        if self.is_translating:
            raise TranslationInProgressError("A translation run is already in progress.")
        project = self.row_store.get_project(project_id)
        if project is None:
            self.notifier.error("Project not found.")
            return TranslationReport()

        self.is_translating = True
        report = TranslationReport()
        try:
            rows, override = self.resolve_scope(project_id, page_id)
            report.override = override
            report.requested = len(rows)
            if not rows:
                self.notifier.info("All rows already have translations!")
                return report

            targets = list(project.target_languages)
            default_template = await self.templates.get_or_create_default()
            usable = {t.id: t for t in await self.templates.usable_templates()}
            glossary_terms = await self.glossary.terms_for_translation()
            groups = group_by_prompt(rows)
            report.groups = len(groups)

            for prompt_key, group_rows in tqdm(groups.items(), desc="Translating", unit="group",
                                               disable=len(groups) < 2):
                custom = None
                if prompt_key != DEFAULT_PROMPT_KEY:
                    custom = usable.get(prompt_key)
                    if custom is None:
                        logger.warning("Template %s is missing or unpublished; using the default only", prompt_key)
                template = merge_templates(_template_dict(default_template), _template_dict(custom))
                logger.info("Group '%s': %d row(s) with template '%s'", prompt_key, len(group_rows), template["name"])

                results = await self.translate(group_rows, template, targets, glossary_terms)
                await self._merge_results(project_id, group_rows, results, template["name"], override, report)
        except ProviderNotConfiguredError as e:
            logger.error("Translation provider not configured: %s", e)
            report.failed = report.requested - report.succeeded
            self.notifier.error("Translation service is not configured. Add an API key to the environment.")
            return report
        finally:
            self.is_translating = False
            self.row_store.clear_selection(project_id)

        self._report(report)
        if self.audit is not None and report.succeeded:
            await self.audit.log_action(self.user, AuditAction.TRANSLATED_AI, "project", project_id, project_id,
                                        metadata={"rows": report.succeeded, "failed": report.failed,
                                                  "override": override})
        return report

    async def _merge_results(self, project_id: str, rows: List[Row], results: List[Dict[str, Any]],
                             template_name: str, override: bool, report: TranslationReport) -> None:
        rows_by_id = {row.id: row for row in rows}
        for result in results:
            row = rows_by_id.get(str(result.get("id")))
            if row is None:
                logger.warning("Ignoring result for unknown row id %s", result.get("id"))
                continue
            if result.get("status") == RESULT_ERROR:
                report.failed += 1
                report.errors.append(f"{row.id}: {result.get('error', 'unknown error')}")
                report.error_types.append(result.get("error_type", ERROR_FAILED))
                continue

            current = self.row_store.get_row(project_id, row.id) or row
            cells = {}
            for lang, cell in result["translations"].items():
                if not override and not current.cell(lang).is_empty:
                    continue
                cells[lang] = {"text": cell["text"], "status": cell.get("status") or STATUS_DRAFT}
            if not cells:
                report.succeeded += 1
                continue

            updates = {"translations": cells, "translated_at": now_iso(), "template_used": template_name}
            if await self.row_store.update_row(project_id, row.id, updates, notify=False):
                report.succeeded += 1
            else:
                report.failed += 1
                report.errors.append(f"{row.id}: could not save translation")
                report.error_types.append(ERROR_FAILED)

    def _report(self, report: TranslationReport) -> None:
        """Raise exactly one notification summarizing the run."""
        if not report.failed:
            self.notifier.success(f"Successfully translated {report.succeeded} row(s)!")
        elif report.succeeded:
            self.notifier.warning(f"Translated {report.succeeded} of {report.requested} row(s); "
                                  f"{report.failed} failed.")
        elif report.error_types and all(t == ERROR_RATE_LIMITED for t in report.error_types):
            self.notifier.error("Rate limited. Please wait a moment and try again.")
        else:
            detail = report.errors[0] if report.errors else "unknown error"
            self.notifier.error(f"Translation failed: {detail}")
