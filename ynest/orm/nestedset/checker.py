"""一致性检查

在一个 scope 内执行四个互相独立的计数查询，全部为 0 表示树结构有效:

- oddness: lft >= rgt，或 rgt - lft 为偶数（高度为奇数）
- duplicates: 两个不同的行共享任意一个边界值（按对计数）
- wrong_parent: 声明的父节点不是最近的包含区间（按子节点计数）
- missing_parent: parent_id 指向 scope 内不存在的主键

检查只读，不做任何写入。损坏通过返回值报告，而不是异常。
"""

from pydantic import BaseModel, computed_field
from sqlalchemy import and_, exists, func, not_, or_, select

from ynest.log import get_logger

from .repository import NodeRepository

logger = get_logger()


class TreeErrorReport(BaseModel):
    """一致性检查结果"""

    oddness: int = 0
    duplicates: int = 0
    wrong_parent: int = 0
    missing_parent: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.oddness + self.duplicates + self.wrong_parent + self.missing_parent

    @computed_field
    @property
    def is_broken(self) -> bool:
        return self.total > 0


class ConsistencyChecker:
    """一致性检查器

    使用示例:
        report = ConsistencyChecker(repository).count_errors()
        if report.is_broken:
            tree.fix_tree()
    """

    def __init__(self, repository: NodeRepository, include_deleted: bool = True):
        self.repository = repository
        self.include_deleted = include_deleted

    def _alias(self, name: str):
        return self.repository.table.alias(name)

    def _where(self, alias):
        """某个别名上的 scope（以及可选的在线视图）条件"""
        repo = self.repository
        clause = repo.scoped(alias)
        if not self.include_deleted:
            clause = and_(clause, repo.live_clause(alias))
        return clause

    def _cols(self, alias):
        columns = self.repository.columns
        return (
            alias.c[columns.key],
            alias.c[columns.lft],
            alias.c[columns.rgt],
            alias.c[columns.parent_id],
        )

    def oddness_query(self):
        t = self._alias("odd_c")
        _, lft, rgt, _ = self._cols(t)
        return (
            select(func.count())
            .select_from(t)
            .where(self._where(t), or_(lft >= rgt, (rgt - lft) % 2 == 0))
        )

    def duplicates_query(self):
        c1, c2 = self._alias("dup_a"), self._alias("dup_b")
        k1, l1, r1, _ = self._cols(c1)
        k2, l2, r2, _ = self._cols(c2)
        return (
            select(func.count())
            .select_from(c1)
            .join(c2, k1 < k2)
            .where(
                self._where(c1),
                self._where(c2),
                or_(l1 == l2, l1 == r2, r1 == l2, r1 == r2),
            )
        )

    def wrong_parent_query(self):
        c, p, m = self._alias("wp_c"), self._alias("wp_p"), self._alias("wp_m")
        ck, cl, _, cp = self._cols(c)
        pk, pl, pr, _ = self._cols(p)
        mk, ml, mr, _ = self._cols(m)

        # 存在一个位于父子之间的中间区间
        intermediate = exists().where(
            self._where(m),
            mk != pk,
            mk != ck,
            cl.between(ml, mr),
            ml.between(pl, pr),
        )
        return (
            select(func.count(ck.distinct()))
            .select_from(c)
            .join(p, cp == pk)
            .where(
                self._where(c),
                self._where(p),
                or_(not_(cl.between(pl, pr)), intermediate),
            )
        )

    def missing_parent_query(self):
        c, p = self._alias("mp_c"), self._alias("mp_p")
        _, _, _, cp = self._cols(c)
        pk, _, _, _ = self._cols(p)
        return (
            select(func.count())
            .select_from(c)
            .where(
                self._where(c),
                cp.is_not(None),
                not_(exists().where(self._where(p), pk == cp)),
            )
        )

    def count_errors(self) -> TreeErrorReport:
        """执行四项检查（一条 SELECT）"""
        self.repository.session.flush()
        stmt = select(
            self.oddness_query().scalar_subquery().label("oddness"),
            self.duplicates_query().scalar_subquery().label("duplicates"),
            self.wrong_parent_query().scalar_subquery().label("wrong_parent"),
            self.missing_parent_query().scalar_subquery().label("missing_parent"),
        )
        row = self.repository.session.execute(stmt).one()
        report = TreeErrorReport(**row._asdict())
        if report.is_broken:
            logger.info(f"{self.repository.table.name} {self.repository.scope!r} 检测到结构错误: {report.model_dump()}")
        return report

    def is_broken(self) -> bool:
        return self.count_errors().is_broken
