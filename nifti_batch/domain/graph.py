"""任务图构建：把一个作业拆分为带依赖边与输入文件绑定的有序任务列表。

流水线阶段以数据表 ``PIPELINE`` 描述；新增阶段只需追加一行，
后继阶段自动依赖前一阶段，并以前一阶段的固定输出名作为唯一输入文件。
图结构采用下标寻址的节点/边列表，不在节点之间互相持有引用。
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from nifti_batch.domain.enums import TaskId
from nifti_batch.domain.errors import ConfigurationError
from nifti_batch.domain.models import FileSpecifier, Job, TaskSpecifier


@dataclass(frozen=True, slots=True)
class StageDefinition:
    """单个处理阶段的静态描述：脚本位置与固定输出文件名。"""
    task_id: TaskId
    script: str
    output_name: str


INSTALL_DIR = "mri-processing"
AUX_BIN_DIR = "mri-processing/bin"

PIPELINE: tuple[StageDefinition, ...] = (
    StageDefinition(TaskId.reslice, "mri-processing/niftiInit.bat", "resliced.nii"),
    StageDefinition(TaskId.skull_strip, "mri-processing/skullStrip.bat", "skull-stripped.nii"),
)


def stage_for(task_id: TaskId) -> StageDefinition | None:
    """按任务标识查找处理阶段；merge 等非处理任务返回 None。"""
    for stage in PIPELINE:
        if stage.task_id == task_id:
            return stage
    return None


@dataclass(slots=True)
class TaskGraph:
    """下标寻址的任务图，edges 中每条边为 (前驱下标, 后继下标)。"""
    nodes: list[TaskSpecifier] = field(default_factory=list)
    edges: list[tuple[int, int]] = field(default_factory=list)

    def add_node(self, spec: TaskSpecifier) -> int:
        self.nodes.append(spec)
        return len(self.nodes) - 1

    def add_edge(self, before: int, after: int) -> None:
        if not (0 <= before < len(self.nodes) and 0 <= after < len(self.nodes)):
            raise IndexError(f"edge out of range: {before}->{after}")
        self.edges.append((before, after))

    def index_of(self, task_id: TaskId) -> int:
        for index, node in enumerate(self.nodes):
            if node.task_id == task_id:
                return index
        raise KeyError(f"task not in graph: {task_id!r}")

    def predecessors(self, index: int) -> list[int]:
        return [before for before, after in self.edges if after == index]

    def successors(self, index: int) -> list[int]:
        return [after for before, after in self.edges if before == index]

    def topological_order(self) -> list[int]:
        """返回满足依赖边的执行顺序；同层节点保持插入顺序。"""
        in_degree = [len(self.predecessors(index)) for index in range(len(self.nodes))]
        ready = deque(index for index, degree in enumerate(in_degree) if degree == 0)
        order: list[int] = []
        while ready:
            index = ready.popleft()
            order.append(index)
            for nxt in self.successors(index):
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    ready.append(nxt)
        if len(order) != len(self.nodes):
            raise ConfigurationError("task graph contains a cycle")
        return order

    def dependents_of(self, task_id: TaskId) -> list[TaskId]:
        """返回直接或间接依赖指定任务的全部任务标识。"""
        start = self.index_of(task_id)
        seen: set[int] = set()
        pending = deque(self.successors(start))
        while pending:
            index = pending.popleft()
            if index in seen:
                continue
            seen.add(index)
            pending.extend(self.successors(index))
        return [self.nodes[index].task_id for index in sorted(seen)]

    def ordered_specs(self) -> list[TaskSpecifier]:
        return [self.nodes[index] for index in self.topological_order()]


def build_graph(job: Job, *, include_merge: bool = False) -> TaskGraph:
    """按 PIPELINE 构建任务图；include_merge 时追加依赖最后一个阶段的 merge 节点。"""
    if not job.files:
        raise ConfigurationError(f"job {job.id} declares no input files")

    graph = TaskGraph()
    previous: int | None = None
    for stage in PIPELINE:
        if previous is None:
            # 首阶段直接使用作业声明的第一个输入文件。
            required = (job.files[0],)
            depends_on = None
        else:
            upstream = PIPELINE[previous]
            required = (FileSpecifier(name=upstream.output_name),)
            depends_on = upstream.task_id
        index = graph.add_node(
            TaskSpecifier(
                task_id=stage.task_id,
                required_files=required,
                parameters=job.parameters,
                depends_on=depends_on,
            )
        )
        if previous is not None:
            graph.add_edge(previous, index)
        previous = index

    if include_merge and previous is not None:
        last = graph.nodes[previous]
        merge_index = graph.add_node(
            TaskSpecifier(
                task_id=TaskId.merge,
                required_files=(FileSpecifier(name=PIPELINE[previous].output_name),),
                parameters=job.parameters,
                depends_on=last.task_id,
            )
        )
        graph.add_edge(previous, merge_index)
    return graph


def split(job: Job) -> list[TaskSpecifier]:
    """把作业拆分为处理阶段任务列表（不含 merge）。"""
    return build_graph(job).ordered_specs()
