import pytest

from wordflow.ai_providers import DryRunProvider
from wordflow.app_context import build_app_context, resolve_current_user
from wordflow.approvals import DECISION_APPROVED, DECISION_REJECTED
from wordflow.models import STATUS_APPROVED, STATUS_CHANGES, STATUS_REVIEW


@pytest.mark.asyncio
async def test_project_from_import_to_approval(app_config):
    context = build_app_context(app_config)
    assert isinstance(context.provider, DryRunProvider)

    admin = await context.users.upsert_user("admin@example.com", "Admin", role="admin")
    malay = await context.users.upsert_user("aminah@example.com", "Aminah", role="manager", languages=["my"])
    chinese = await context.users.upsert_user("wei@example.com", "Wei", role="manager", languages=["zh"])
    app_config.current_user_email = "admin@example.com"
    assert (await resolve_current_user(context)).id == admin.id

    project = await context.row_store.create_project(
        {"name": "Wallet", "target_languages": ["my", "zh"]},
        sheets={"Home": {"entries": [{"source_text": "Balance"}, {"source_text": "Top up"}]}},
    )

    report = await context.queue.translate_project(project.id)
    assert (report.succeeded, report.failed) == (2, 0)
    rows = context.pages.current_rows(project.id)
    assert rows[0].cell("my").text == "[my] Balance"

    sent, failed = await context.approvals.send_for_review(project.id, assignments={"my": malay.id,
                                                                                    "zh": chinese.id})
    assert (sent, failed) == (2, 0)
    assert context.row_store.get_project(project.id).status == STATUS_REVIEW

    context.set_user(malay)
    assert context.approvals.review_languages() == ["my"]
    for item in context.approvals.visible_items():
        context.approvals.mark(project.id, item.row.id, "my", DECISION_APPROVED)
    assert await context.approvals.save_changes() == (2, 0)

    for row in context.pages.current_rows(project.id):
        assert row.cell("my").status == STATUS_APPROVED
        assert row.cell("zh").status == STATUS_REVIEW
        assert row.status == STATUS_REVIEW
    assert context.row_store.get_project(project.id).progress == 0
    assert context.row_store.get_project(project.id).status == STATUS_REVIEW

    context.set_user(chinese)
    balance, top_up = (item.row for item in context.approvals.visible_items())
    context.approvals.mark(project.id, balance.id, "zh", DECISION_APPROVED)
    context.approvals.mark(project.id, top_up.id, "zh", DECISION_REJECTED)
    context.approvals.set_remark(project.id, top_up.id, "zh", "Use 充值")
    await context.approvals.save_changes()

    stored = await context.store.get("projects", project.id)
    assert (stored["progress"], stored["translatedRows"], stored["pendingReview"]) == (50, 1, 0)
    assert context.row_store.get_row(project.id, balance.id).status == STATUS_APPROVED
    assert context.row_store.get_row(project.id, top_up.id).status == STATUS_CHANGES

    context.set_user(admin)
    await context.poller.refresh_once()
    reloaded = context.row_store.get_row(project.id, top_up.id)
    assert reloaded.cell("zh").remark == "Use 充值"
    assert reloaded.cell("my").status == STATUS_APPROVED
    actions = {entry.action for entry in await context.audit.list_entries(max_results=50)}
    assert {"PROJECT_CREATED", "TRANSLATED_AI", "SENT_FOR_REVIEW", "APPROVED", "REJECTED"} <= actions
