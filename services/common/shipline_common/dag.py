"""Stage DAG utilities using graphlib."""

from graphlib import CycleError, TopologicalSorter

from .errors import InvalidPipeline
from .schemas import PipelineConfig


class StageDAG:
    """Wraps TopologicalSorter for stage dependency management."""

    def __init__(self, graph: dict[str, set[str]]) -> None:
        self._graph = {name: set(deps) for name, deps in graph.items()}

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "StageDAG":
        """Build and validate the DAG; raises InvalidPipeline on bad shape."""
        seen: set[str] = set()
        for s in config.stages:
            if s.name in seen:
                raise InvalidPipeline(f"duplicate_stage name={s.name}")
            seen.add(s.name)
        for s in config.stages:
            unknown = sorted(set(s.needs) - seen)
            if unknown:
                raise InvalidPipeline(f"unknown_dependency stage={s.name} needs={unknown}")
            if s.name in s.needs:
                raise InvalidPipeline(f"self_dependency stage={s.name}")
        dag = cls(config.graph())
        dag.order()
        return dag

    @property
    def names(self) -> list[str]:
        return list(self._graph)

    def needs(self, name: str) -> set[str]:
        return set(self._graph[name])

    def order(self) -> list[str]:
        """Return stages in topological order."""
        try:
            return list(TopologicalSorter(self._graph).static_order())
        except CycleError as e:
            cycle = e.args[1] if len(e.args) > 1 else []
            raise InvalidPipeline(f"dependency_cycle stages={list(cycle)}") from e

    def ready(self, succeeded: set[str], started: set[str]) -> list[str]:
        """Stages not yet started whose dependencies have all succeeded."""
        out = []
        for name in self.order():
            if name not in started and self._graph[name] <= succeeded:
                out.append(name)
        return out

    def descendants(self, name: str) -> set[str]:
        found: set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for other, deps in self._graph.items():
                if current in deps and other not in found:
                    found.add(other)
                    frontier.append(other)
        return found
