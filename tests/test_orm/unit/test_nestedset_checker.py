"""一致性检查测试

四类错误分别制造、分别计数，检查本身不做任何写入。
"""

import pytest

from ynest.config import NestedSetSettings
from ynest.orm.nestedset import ConsistencyChecker, NestedSet, TreeErrorReport

from tests.helpers.tree_helpers import read_bounds, seed_rows, seed_sample_tree, set_columns
from tests.helpers.tree_models import Category, Document, MenuItem


@pytest.fixture
def tree(db_session):
    seed_sample_tree(db_session, Category)
    return NestedSet(Category, db_session)


class TestTreeErrorReport:
    """检查结果"""

    def test_report_totals(self):
        report = TreeErrorReport(oddness=1, duplicates=2)
        assert report.total == 3
        assert report.is_broken
        assert report.model_dump()["total"] == 3

    def test_empty_report(self):
        report = TreeErrorReport()
        assert report.total == 0
        assert not report.is_broken


class TestConsistencyChecker:
    """四类错误"""

    def test_valid_tree(self, tree):
        report = tree.count_errors()
        assert report == TreeErrorReport()
        assert not tree.is_broken()

    def test_empty_tree(self, db_session):
        assert NestedSet(Category, db_session).total_errors() == 0

    def test_oddness(self, tree, db_session):
        set_columns(db_session, Category, 3, rgt=3)

        report = tree.count_errors()
        assert report.oddness == 1
        assert report.duplicates == 0
        assert report.wrong_parent == 0
        assert report.missing_parent == 0

    def test_duplicates(self, tree, db_session):
        set_columns(db_session, Category, 5, lft=6, rgt=9)

        report = tree.count_errors()
        assert report.duplicates == 1
        assert report.oddness == 0
        assert report.missing_parent == 0

    def test_wrong_parent(self, tree, db_session):
        # 5 不在 2 的区间内；3 与 1 之间还隔着 2
        set_columns(db_session, Category, 5, parent_id=2)
        set_columns(db_session, Category, 3, parent_id=1)

        report = tree.count_errors()
        assert report.wrong_parent == 2
        assert report.oddness == 0
        assert report.duplicates == 0
        assert report.missing_parent == 0

    def test_missing_parent(self, tree, db_session):
        set_columns(db_session, Category, 3, parent_id=404)

        report = tree.count_errors()
        assert report.missing_parent == 1
        assert report.total == 1

    def test_check_is_read_only(self, tree, db_session):
        set_columns(db_session, Category, 3, parent_id=404)
        before = read_bounds(db_session, Category)

        tree.count_errors()
        tree.is_broken()

        assert read_bounds(db_session, Category) == before

    def test_scoped_check(self, db_session):
        seed_rows(db_session, MenuItem, [(1, 1, 4, None), (2, 2, 3, 1)], menu_id=1)
        seed_rows(db_session, MenuItem, [(3, 1, 4, None), (4, 2, 2, 3)], menu_id=2)

        assert MenuItem.nested_set(db_session, menu_id=1).total_errors() == 0
        assert MenuItem.nested_set(db_session, menu_id=2).count_errors().oddness == 1


class TestDeletedRowsInCheck:
    """软删除的行是否参与检查"""

    def test_deleted_rows_are_checked_by_default(self, db_session):
        seed_sample_tree(db_session, Document)
        tree = NestedSet(Document, db_session)
        tree.delete_subtree(2)
        set_columns(db_session, Document, 3, rgt=3)

        assert tree.count_errors().oddness == 1

    def test_live_only_check(self, db_session):
        seed_sample_tree(db_session, Document)
        tree = NestedSet(Document, db_session, settings=NestedSetSettings(include_deleted_in_checks=False))
        tree.delete_subtree(2)
        set_columns(db_session, Document, 3, rgt=3)

        assert tree.count_errors().total == 0
        assert ConsistencyChecker(tree.repository, include_deleted=True).count_errors().oddness == 1
