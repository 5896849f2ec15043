from unittest.mock import patch, AsyncMock

import pytest

from wordflow.approvals import (
    DECISION_APPROVED,
    DECISION_REJECTED,
    ApprovalWorkflow,
    is_row_new,
    new_approval_count,
)
from wordflow.audit import AuditAction
from wordflow.document_store import PROJECTS, page_rows_path
from wordflow.errors import PermissionDeniedError, StoreError
from wordflow.models import (
    Project,
    Row,
    TranslationCell,
    User,
    STATUS_APPROVED,
    STATUS_CHANGES,
    STATUS_DRAFT,
    STATUS_REVIEW,
)
from wordflow.row_store import RowStore

TRANSLATED = [
    {"id": "r1", "source_text": "Save", "translations": {"my": {"text": "Simpan"}, "zh": {"text": "保存"}}},
    {"id": "r2", "source_text": "Cancel", "translations": {"my": {"text": "Batal"}, "zh": {"text": "取消"}}},
    {"id": "r3", "source_text": "Done", "translations": {"my": {"text": "Selesai"}, "zh": {"text": "完成"}}},
]


async def seed_project(row_store, rows=TRANSLATED):
    project = await row_store.create_project({"name": "Shop", "target_languages": ["my", "zh"]})
    page = row_store.get_pages(project.id)[0]
    await row_store.add_rows(project.id, page.id, rows, notify=False)
    row_store.notifier.clear()
    return project, page


async def in_review(row_store, approvals, assignments=None):
    project, page = await seed_project(row_store)
    await approvals.send_for_review(project.id, assignments=assignments)
    row_store.notifier.clear()
    return project, page


class TestSendForReview:
    @pytest.mark.asyncio
    async def test_sends_every_draft_row_with_assignments(self, row_store, approvals, store, audit, notifier,
                                                           manager_my):
        project, page = await seed_project(row_store)

        assert await approvals.send_for_review(project.id, assignments={"my": manager_my.id}) == (3, 0)

        for row in row_store.all_rows(project.id):
            assert row.status == STATUS_REVIEW
            assert row.cell("my").status == STATUS_REVIEW
            assert row.cell("my").assigned_manager_id == manager_my.id
            assert row.cell("my").assigned_at is not None
            assert row.cell("zh").assigned_manager_id is None
        doc = await store.get(page_rows_path(project.id, page.id), "r1")
        assert doc["translations"]["my"]["assignedManagerId"] == manager_my.id
        assert row_store.get_project(project.id).pending_review == 3
        assert (await store.get(PROJECTS, project.id))["status"] == STATUS_REVIEW
        assert len(await audit.list_entries({"action": AuditAction.SENT_FOR_REVIEW})) == 3
        assert [n.message for n in notifier.history] == ["Sent 3 row(s) for review."]

    @pytest.mark.asyncio
    async def test_selection_wins_and_is_cleared(self, row_store, approvals):
        project, _page = await seed_project(row_store)
        row_store.select_rows(project.id, ["r2"])

        assert await approvals.send_for_review(project.id) == (1, 0)

        assert [r.id for r in row_store.all_rows(project.id) if r.status == STATUS_REVIEW] == ["r2"]
        assert row_store.selected_row_ids(project.id) == []

    @pytest.mark.asyncio
    async def test_approved_cells_are_left_alone(self, row_store, approvals):
        project, _page = await seed_project(row_store, [{
            "id": "r1", "source_text": "Save",
            "translations": {"my": {"text": "Simpan", "status": STATUS_APPROVED}, "zh": {"text": "保存"}},
        }])

        await approvals.send_for_review(project.id, ["r1"])

        row = row_store.get_row(project.id, "r1")
        assert row.cell("my").status == STATUS_APPROVED
        assert row.cell("zh").status == STATUS_REVIEW
        assert row.status == STATUS_REVIEW

    @pytest.mark.asyncio
    async def test_selected_approved_rows_stay_approved(self, row_store, approvals, notifier):
        approved = {"text": "x", "status": STATUS_APPROVED}
        project, _page = await seed_project(row_store, [
            {"id": "r1", "source_text": "Save", "translations": {"my": dict(approved), "zh": dict(approved)}},
            TRANSLATED[1],
        ])

        assert await approvals.send_for_review(project.id, ["r1"]) == (0, 0)
        assert row_store.get_row(project.id, "r1").status == STATUS_APPROVED
        assert approvals.collect_review_rows() == []
        assert notifier.history[-1].message == "No rows to send for review."

        assert await approvals.send_for_review(project.id, ["r1", "r2"]) == (1, 0)
        assert row_store.get_row(project.id, "r1").status == STATUS_APPROVED
        assert [item.row.id for item in approvals.collect_review_rows()] == ["r2"]

    @pytest.mark.asyncio
    async def test_falls_back_to_rows_not_yet_approved(self, row_store, approvals, manager_zh):
        project, _page = await in_review(row_store, approvals)

        assert await approvals.send_for_review(project.id, assignments={"zh": manager_zh.id}) == (3, 0)

        assert all(r.cell("zh").assigned_manager_id == manager_zh.id for r in row_store.all_rows(project.id))

    @pytest.mark.asyncio
    async def test_nothing_to_send(self, row_store, approvals, notifier):
        approved = {"text": "x", "status": STATUS_APPROVED}
        project, _page = await seed_project(row_store, [{"id": "r1", "source_text": "Save", "status": STATUS_APPROVED,
                                                         "translations": {"my": dict(approved),
                                                                          "zh": dict(approved)}}])

        assert await approvals.send_for_review(project.id) == (0, 0)
        assert notifier.history[-1].message == "No rows to send for review."

    @pytest.mark.asyncio
    async def test_viewers_cannot_send(self, row_store, approvals, viewer_user):
        project, _page = await seed_project(row_store)
        approvals.user = viewer_user

        with pytest.raises(PermissionDeniedError):
            await approvals.send_for_review(project.id)

    @pytest.mark.asyncio
    async def test_unknown_project(self, approvals, notifier):
        assert await approvals.send_for_review("missing") == (0, 0)
        assert notifier.history[-1].message == "Project not found."


class TestReviewVisibility:
    @pytest.mark.asyncio
    async def test_managers_see_only_their_cells(self, row_store, approvals, manager_my, manager_zh):
        await in_review(row_store, approvals, {"my": manager_my.id})

        assert len(approvals.visible_items(manager_my)) == 3
        assert approvals.review_languages(manager_my) == ["my"]
        assert approvals.review_languages(manager_zh) == ["zh"]

        item = approvals.visible_items(manager_zh)[0]
        zh_view = approvals.cell_view(item, "zh", manager_zh)
        my_view = approvals.cell_view(item, "my", manager_zh)
        assert zh_view.actionable and zh_view.cell.text
        assert not my_view.visible
        assert my_view.assigned_to_other

    @pytest.mark.asyncio
    async def test_unrestricted_manager_loses_cells_assigned_to_someone_else(self, row_store, approvals, manager_my):
        await in_review(row_store, approvals, {"my": manager_my.id})
        generalist = User(id="u-mgr-all", email="all@example.com", role="manager")

        item = approvals.visible_items(generalist)[0]

        assert approvals.hidden_languages(item, generalist) == ["my"]
        assert approvals.review_languages(generalist) == ["zh"]

    @pytest.mark.asyncio
    async def test_admin_sees_everything_but_gets_the_badge(self, row_store, approvals, admin_user, manager_my):
        await in_review(row_store, approvals, {"my": manager_my.id})

        item = approvals.visible_items(admin_user)[0]
        view = approvals.cell_view(item, "my", admin_user)

        assert view.actionable and view.assigned_to_other
        assert approvals.hidden_languages(item, admin_user) == []

    @pytest.mark.asyncio
    async def test_editors_see_nothing(self, row_store, approvals, editor_user):
        await in_review(row_store, approvals)
        assert approvals.visible_items(editor_user) == []

    def test_reviewer_is_required(self, row_store, glossary, notifier):
        with pytest.raises(ValueError):
            ApprovalWorkflow(row_store, glossary, notifier).visible_items()

    def test_flat_rows_are_listed_without_page(self, row_store, approvals):
        row_store.projects["flat"] = Project(id="flat", name="Flat", target_languages=["my"])
        row_store.legacy_rows["flat"] = [Row(id="r1", project_id="flat", status=STATUS_REVIEW,
                                             translations={"my": TranslationCell(text="Hai", status=STATUS_REVIEW)})]

        [item] = approvals.collect_review_rows()

        assert (item.project_name, item.page_id, item.page_name) == ("Flat", "", "—")

    @pytest.mark.asyncio
    async def test_fetch_loads_projects_missing_from_cache(self, row_store, approvals, store, notifier, audit,
                                                           admin_user):
        project, page = await in_review(row_store, approvals)
        fresh = RowStore(store, notifier, audit, admin_user)
        workflow = ApprovalWorkflow(fresh, approvals.glossary, notifier, audit, admin_user)

        items = await workflow.fetch_review_rows()

        assert {(i.project_id, i.page_name, i.row.id) for i in items} == {
            (project.id, page.name, rid) for rid in ("r1", "r2", "r3")
        }
        assert fresh.get_project(project.id) is not None

    @pytest.mark.asyncio
    async def test_fetch_falls_back_to_cache_when_query_fails(self, row_store, approvals, store, notifier):
        await in_review(row_store, approvals)

        with patch.object(store, "query_group", new_callable=AsyncMock, side_effect=StoreError("offline")):
            items = await approvals.fetch_review_rows()

        assert len(items) == 3
        assert notifier.history[-1].message == "Could not load rows waiting for review."


class TestDecisions:
    @pytest.mark.asyncio
    async def test_approve_and_reject(self, row_store, approvals, store, audit, notifier, admin_user):
        project, page = await in_review(row_store, approvals)
        approvals.user = admin_user

        approvals.mark(project.id, "r1", "my", DECISION_APPROVED)
        approvals.mark(project.id, "r1", "zh", DECISION_APPROVED)
        approvals.mark(project.id, "r2", "my", DECISION_REJECTED)
        approvals.set_remark(project.id, "r2", "my", "Use 'Batalkan'")
        assert approvals.pending_count() == 3

        assert await approvals.save_changes() == (2, 0)

        r1, r2, r3 = (row_store.get_row(project.id, rid) for rid in ("r1", "r2", "r3"))
        assert r1.status == STATUS_APPROVED
        assert r1.approved_at is not None
        assert r2.status == STATUS_CHANGES
        assert r2.cell("my").status == STATUS_CHANGES
        assert r2.cell("my").remark == "Use 'Batalkan'"
        assert r2.cell("zh").status == STATUS_REVIEW
        assert r3.status == STATUS_REVIEW

        stats = row_store.get_project(project.id)
        assert (stats.progress, stats.translated_rows, stats.pending_review, stats.status) == (
            33, 1, 1, STATUS_REVIEW)
        assert (await store.get(PROJECTS, project.id))["progress"] == 33
        assert (await store.get(page_rows_path(project.id, page.id), "r2"))["translations"]["my"]["remark"] == \
            "Use 'Batalkan'"
        assert approvals.pending_count() == 0
        assert len(await audit.list_entries({"action": AuditAction.REJECTED})) == 1
        assert notifier.history[-1].message == "Changes saved successfully"

    @pytest.mark.asyncio
    async def test_approving_clears_a_previous_remark(self, row_store, approvals, admin_user):
        project, _page = await in_review(row_store, approvals)
        approvals.user = admin_user
        approvals.mark(project.id, "r1", "my", DECISION_REJECTED)
        approvals.set_remark(project.id, "r1", "my", "Wrong tone")
        await approvals.save_changes()
        await approvals.send_for_review(project.id, ["r1"])

        approvals.mark(project.id, "r1", "my", DECISION_APPROVED)
        await approvals.save_changes()

        assert row_store.get_row(project.id, "r1").cell("my").remark == ""

    @pytest.mark.asyncio
    async def test_cells_already_decided_cannot_be_marked(self, row_store, approvals, admin_user):
        project, _page = await in_review(row_store, approvals)
        approvals.user = admin_user
        approvals.mark(project.id, "r1", "my", DECISION_REJECTED)
        await approvals.save_changes()

        with pytest.raises(PermissionDeniedError):
            approvals.mark(project.id, "r1", "my", DECISION_APPROVED)

    @pytest.mark.asyncio
    async def test_managers_cannot_mark_cells_assigned_to_someone_else(self, row_store, approvals,
                                                                        manager_my, manager_zh):
        project, _page = await in_review(row_store, approvals, {"my": manager_my.id, "zh": manager_zh.id})
        approvals.user = manager_zh

        with pytest.raises(PermissionDeniedError):
            approvals.mark(project.id, "r1", "my", DECISION_APPROVED)
        approvals.mark(project.id, "r1", "zh", DECISION_APPROVED)

        assert approvals.pending_decisions() == {"r1": {"zh": DECISION_APPROVED}}

    @pytest.mark.asyncio
    async def test_managers_cannot_mark_languages_outside_their_own(self, row_store, approvals, manager_zh):
        project, _page = await in_review(row_store, approvals)
        approvals.user = manager_zh

        with pytest.raises(PermissionDeniedError):
            approvals.mark(project.id, "r1", "my", DECISION_REJECTED)
        assert approvals.pending_count() == 0

    @pytest.mark.asyncio
    async def test_save_drops_decisions_after_reassignment(self, row_store, approvals, notifier,
                                                           admin_user, manager_my):
        project, _page = await in_review(row_store, approvals, {"my": manager_my.id})
        approvals.user = manager_my
        approvals.mark(project.id, "r1", "my", DECISION_APPROVED)
        approvals.mark(project.id, "r2", "my", DECISION_APPROVED)
        approvals.user = admin_user
        await approvals.reassign(project.id, "r1", "my", "u-someone-else")
        approvals.user = manager_my

        assert await approvals.save_changes() == (1, 0)

        assert row_store.get_row(project.id, "r1").cell("my").status == STATUS_REVIEW
        assert row_store.get_row(project.id, "r2").cell("my").status == STATUS_APPROVED
        assert approvals.pending_count() == 0
        assert notifier.history[-1].message == \
            "Saved 1 row(s). 1 decision(s) on cells you cannot review were dropped."

    @pytest.mark.asyncio
    async def test_editors_cannot_decide(self, row_store, approvals):
        project, _page = await in_review(row_store, approvals)

        with pytest.raises(PermissionDeniedError):
            approvals.mark(project.id, "r1", "my", DECISION_APPROVED)
        assert approvals.pending_count() == 0

    def test_unknown_decision(self, approvals, admin_user):
        approvals.user = admin_user
        with pytest.raises(ValueError):
            approvals.mark("p1", "r1", "my", "maybe")

    @pytest.mark.asyncio
    async def test_undo_and_discard(self, row_store, approvals, admin_user):
        project, _page = await in_review(row_store, approvals)
        approvals.user = admin_user
        approvals.mark(project.id, "r1", "my", DECISION_APPROVED)
        approvals.mark(project.id, "r2", "zh", DECISION_REJECTED)

        approvals.undo("r1", "my")
        assert approvals.pending_decisions() == {"r2": {"zh": DECISION_REJECTED}}

        approvals.discard_all()
        assert approvals.pending_count() == 0

    @pytest.mark.asyncio
    async def test_save_without_decisions(self, approvals, notifier):
        assert await approvals.save_changes() == (0, 0)
        assert notifier.history[-1].message == "No items marked for approval or rejection"

    @pytest.mark.asyncio
    async def test_failed_rows_stay_pending(self, row_store, approvals, store, notifier, admin_user):
        project, _page = await in_review(row_store, approvals)
        approvals.user = admin_user
        approvals.mark(project.id, "r1", "my", DECISION_APPROVED)

        with patch.object(store, "update", new_callable=AsyncMock, side_effect=StoreError("offline")):
            assert await approvals.save_changes() == (0, 1)

        assert approvals.pending_decisions() == {"r1": {"my": DECISION_APPROVED}}
        assert notifier.history[-1].message == "Saved 0 row(s); 1 failed and are still pending."

    @pytest.mark.asyncio
    async def test_decisions_load_rows_missing_from_cache(self, row_store, approvals, store, notifier, audit,
                                                          admin_user):
        project, _page = await in_review(row_store, approvals)
        fresh = RowStore(store, notifier, audit, admin_user)
        workflow = ApprovalWorkflow(fresh, approvals.glossary, notifier, audit, admin_user)
        workflow.mark(project.id, "r3", "my", DECISION_APPROVED)

        assert await workflow.save_changes() == (1, 0)
        assert fresh.get_row(project.id, "r3").cell("my").status == STATUS_APPROVED

    @pytest.mark.asyncio
    async def test_reassign(self, row_store, approvals, audit, manager_my, manager_zh):
        project, _page = await in_review(row_store, approvals, {"my": manager_my.id})
        approvals.user = manager_my

        assert await approvals.reassign(project.id, "r1", "my", manager_zh.id) is True

        cell = row_store.get_row(project.id, "r1").cell("my")
        assert cell.assigned_manager_id == manager_zh.id
        assert cell.status == STATUS_REVIEW
        assert len(await audit.list_entries({"action": AuditAction.REASSIGNED})) == 1

    @pytest.mark.asyncio
    async def test_editors_cannot_reassign(self, row_store, approvals, manager_zh):
        project, _page = await in_review(row_store, approvals)

        with pytest.raises(PermissionDeniedError):
            await approvals.reassign(project.id, "r1", "my", manager_zh.id)


class TestGlossaryReview:
    @pytest.mark.asyncio
    async def test_any_rejection_sends_term_back_to_draft(self, approvals, glossary, notifier, manager_my):
        account = await glossary.create_term({"english": "Account", "translations": {"my": "Akaun", "zh": "账户"},
                                              "status": STATUS_REVIEW})
        balance = await glossary.create_term({"english": "Balance", "translations": {"my": "Baki"},
                                              "status": STATUS_REVIEW})
        approvals.user = manager_my
        assert [t.english for t in await approvals.glossary_review_items()] == ["Account", "Balance"]

        approvals.mark_glossary(account.id, "my", DECISION_APPROVED)
        approvals.mark_glossary(account.id, "zh", DECISION_REJECTED)
        approvals.mark_glossary(balance.id, "my", DECISION_APPROVED)

        assert await approvals.save_glossary_decisions() == (2, 0)

        assert (await glossary.get_term(account.id)).status == STATUS_DRAFT
        assert (await glossary.get_term(balance.id)).status == STATUS_APPROVED
        assert notifier.history[-1].message == "Glossary terms updated"
        assert await approvals.glossary_review_items() == []

    @pytest.mark.asyncio
    async def test_nothing_marked(self, approvals, notifier):
        assert await approvals.save_glossary_decisions() == (0, 0)
        assert notifier.history[-1].message == "No items marked for approval or rejection"


class TestNewApprovalBadges:
    ROWS = [
        Row(id="a", project_id="p", status=STATUS_APPROVED, approved_at="2024-05-02T10:00:00.000Z"),
        Row(id="b", project_id="p", status=STATUS_APPROVED, approved_at="2024-04-30T10:00:00.000Z"),
        Row(id="c", project_id="p", status=STATUS_DRAFT),
    ]

    def test_rows_approved_after_last_view_are_new(self):
        assert is_row_new(self.ROWS[0], "2024-05-01T00:00:00.000Z")
        assert not is_row_new(self.ROWS[1], "2024-05-01T00:00:00.000Z")
        assert not is_row_new(self.ROWS[2], None)
        assert new_approval_count(self.ROWS, "2024-05-01T00:00:00.000Z") == 1

    def test_first_visit_counts_every_approved_row(self):
        assert new_approval_count(self.ROWS, None) == 2
        assert new_approval_count(self.ROWS, "not a date") == 2
