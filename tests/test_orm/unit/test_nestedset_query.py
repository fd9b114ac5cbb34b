"""树查询与模型方法测试"""

import pytest

from ynest.exceptions import InvalidNodeError
from ynest.orm.nestedset import NestedSet, TreeQuery

from tests.helpers.tree_helpers import seed_sample_tree
from tests.helpers.tree_models import Category, Document


@pytest.fixture
def tree(db_session):
    seed_sample_tree(db_session, Category)
    return NestedSet(Category, db_session)


def keys(nodes):
    return [node.id for node in nodes]


class TestTreeQuery:
    """区间查询"""

    def test_roots(self, tree):
        assert keys(tree.queries.roots()) == [1]

    def test_descendants(self, tree):
        assert keys(tree.queries.descendants_of(1)) == [2, 3, 4, 5]
        assert keys(tree.queries.descendants_of(2, and_self=True)) == [2, 3]
        assert keys(tree.queries.descendants_of(3)) == []

    def test_ancestors(self, tree):
        assert keys(tree.queries.ancestors_of(3)) == [1, 2]
        assert keys(tree.queries.ancestors_of(3, and_self=True)) == [1, 2, 3]
        assert keys(tree.queries.ancestors_of(1)) == []

    def test_children(self, tree):
        assert keys(tree.queries.children_of(1)) == [2, 4]

    def test_siblings(self, tree):
        assert keys(tree.queries.siblings_of(2)) == [4]
        assert keys(tree.queries.siblings_of(2, "next")) == [4]
        assert keys(tree.queries.siblings_of(2, "prev")) == []
        assert keys(tree.queries.siblings_of(4, "prev")) == [2]

    def test_unknown_sibling_direction(self, tree):
        with pytest.raises(InvalidNodeError):
            tree.queries.siblings_of(2, "up")

    def test_next_and_prev_node(self, tree):
        assert tree.queries.next_node(3).id == 4
        assert tree.queries.prev_node(4).id == 3
        assert tree.queries.next_node(5) is None
        assert tree.queries.prev_node(1) is None

    def test_leaves(self, tree):
        assert keys(tree.queries.leaves()) == [3, 5]

    def test_depth(self, tree):
        assert tree.queries.depth_of(1) == 0
        assert tree.queries.depth_of(5) == 2
        assert tree.queries.with_depth() == {1: 0, 2: 1, 3: 2, 4: 1, 5: 2}

    def test_deleted_nodes_are_hidden(self, db_session):
        seed_sample_tree(db_session, Document)
        tree = NestedSet(Document, db_session)
        tree.delete_subtree(4)

        assert [n.id for n in tree.queries.descendants_of(1)] == [2, 3]
        assert [n.id for n in tree.queries.leaves()] == [3]
        assert tree.queries.with_depth() == {1: 0, 2: 1, 3: 2}

        with_deleted = TreeQuery(tree.repository, include_deleted=True)
        assert [n.id for n in with_deleted.descendants_of(1)] == [2, 3, 4, 5]


class TestNestedSetMixin:
    """模型上的节点判断"""

    def test_node_predicates(self, tree, db_session):
        root, a, a1, b = (db_session.get(Category, key) for key in (1, 2, 3, 4))

        assert root.is_root() and not a.is_root()
        assert a1.is_leaf() and not a.is_leaf()
        assert a1.is_descendant_of(root)
        assert root.is_ancestor_of(a1)
        assert not b.is_descendant_of(a)
        assert a1.is_child_of(a)
        assert a.is_sibling_of(b)
        assert not a.is_sibling_of(a)

    def test_bounds_helpers(self, tree, db_session):
        root = db_session.get(Category, 1)

        assert root.get_key() == 1
        assert root.get_bounds() == (1, 10)
        assert root.get_height() == 10
        assert root.get_descendant_count() == 4

    def test_is_deleted(self, db_session):
        seed_sample_tree(db_session, Document)
        NestedSet(Document, db_session).delete_subtree(3)

        assert db_session.get(Document, 3).is_deleted()
        assert not db_session.get(Document, 2).is_deleted()
