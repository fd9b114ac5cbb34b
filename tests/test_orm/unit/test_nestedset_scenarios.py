"""嵌套集合典型场景测试

单 scope，根节点 key=1，初始边界 [1, 2]：
1. 追加子节点 A
2. 追加子节点 B
3. 把 A 移动到 B 之下
4. 删除 B（连同 A）
5. 制造悬空 parent_id，检查并修复
6. 同一张表中的两棵树互不影响
"""

import pytest

from ynest.orm.nestedset import NestedSet, Position

from tests.helpers.tree_helpers import read_bounds, seed_rows, set_columns
from tests.helpers.tree_models import Category, Document, MenuItem


@pytest.fixture
def tree(db_session):
    seed_rows(db_session, Category, [(1, 1, 2, None, "root")])
    return NestedSet(Category, db_session)


@pytest.fixture
def doc_tree(db_session):
    seed_rows(db_session, Document, [(1, 1, 2, None, "root")])
    return NestedSet(Document, db_session)


def build_root_a_b(tree):
    a = tree.create({"title": "A"}, Position.append_to(1))
    b = tree.create({"title": "B"}, Position.append_to(1))
    return a.id, b.id


class TestScenarios:
    """典型场景"""

    def test_append_first_child(self, tree, db_session):
        """场景1：追加 A，根的 rgt 变为 4，A 为 [2, 3]"""
        a = tree.create({"title": "A"}, Position.append_to(1))

        bounds = read_bounds(db_session, Category)
        assert bounds[1] == (1, 4, None)
        assert bounds[a.id] == (2, 3, 1)

    def test_append_second_child(self, tree, db_session):
        """场景2：追加 B，根的 rgt 变为 6，B 为 [4, 5]"""
        a_id, b_id = build_root_a_b(tree)

        bounds = read_bounds(db_session, Category)
        assert bounds[1] == (1, 6, None)
        assert bounds[a_id] == (2, 3, 1)
        assert bounds[b_id] == (4, 5, 1)

    def test_move_a_under_b(self, tree, db_session):
        """场景3：A 追加到 B 之下，总跨度不变"""
        a_id, b_id = build_root_a_b(tree)

        affected = tree.move(a_id, Position.append_to(b_id))

        bounds = read_bounds(db_session, Category)
        assert affected > 0
        assert bounds[1] == (1, 6, None)
        assert bounds[b_id] == (2, 5, 1)
        assert bounds[a_id] == (3, 4, b_id)
        assert tree.count_errors().total == 0

    def test_hard_delete_subtree(self, tree, db_session):
        """场景4（物理删除）：根收缩回 [1, 2]，A 和 B 都不存在"""
        a_id, b_id = build_root_a_b(tree)
        tree.move(a_id, Position.append_to(b_id))

        deleted = tree.delete_subtree(b_id, hard=True)

        assert deleted == 2
        assert read_bounds(db_session, Category) == {1: (1, 2, None)}
        assert tree.count_errors().total == 0

    def test_soft_delete_subtree(self, doc_tree, db_session):
        """场景4（软删除）：A 和 B 被打上删除标记，边界保留以便恢复"""
        a_id, b_id = build_root_a_b(doc_tree)
        doc_tree.move(a_id, Position.append_to(b_id))

        marked = doc_tree.delete_subtree(b_id)

        assert marked == 2
        assert db_session.get(Document, a_id).deleted_at is not None
        assert db_session.get(Document, b_id).deleted_at is not None
        assert db_session.get(Document, 1).deleted_at is None
        assert read_bounds(db_session, Document)[1] == (1, 6, None)
        assert [node.id for node in doc_tree.queries.descendants_of(1)] == []

    def test_detect_and_fix_missing_parent(self, tree, db_session):
        """场景5：悬空的 parent_id 被检测并修复"""
        a_id, b_id = build_root_a_b(tree)
        set_columns(db_session, Category, a_id, parent_id=999)

        report = tree.count_errors()
        assert report.missing_parent == 1
        assert report.oddness == 0
        assert report.duplicates == 0
        assert report.wrong_parent == 0

        changed = tree.fix_tree()

        assert changed > 0
        assert tree.count_errors().missing_parent == 0
        assert tree.total_errors() == 0
        bounds = read_bounds(db_session, Category)
        # 悬空节点成为顶层节点，排在原有的树之后
        assert bounds[a_id][2] is None
        assert bounds[1] == (1, 4, None)
        assert bounds[b_id] == (2, 3, 1)
        assert bounds[a_id] == (5, 6, None)

    def test_scopes_are_isolated(self, db_session):
        """场景6：修改菜单 1 的树，菜单 2 的左右值保持不变"""
        seed_rows(db_session, MenuItem, [
            (1, 1, 6, None, "menu1-root"),
            (2, 2, 3, 1, "menu1-a"),
            (3, 4, 5, 1, "menu1-b"),
        ], menu_id=1)
        seed_rows(db_session, MenuItem, [
            (4, 1, 6, None, "menu2-root"),
            (5, 2, 3, 4, "menu2-a"),
            (6, 4, 5, 4, "menu2-b"),
        ], menu_id=2)
        before = read_bounds(db_session, MenuItem, menu_id=2)

        menu1 = MenuItem.nested_set(db_session, menu_id=1)
        menu1.create({"title": "menu1-c"}, Position.append_to(1))
        menu1.move(2, Position.append_to(3))
        menu1.delete_subtree(3, hard=True)
        menu1.fix_tree()

        assert read_bounds(db_session, MenuItem, menu_id=2) == before
        assert menu1.count_errors().total == 0
        assert MenuItem.nested_set(db_session, menu_id=2).count_errors().total == 0
