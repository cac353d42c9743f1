# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Operation reports - the nested status tree built by every pipeline run.

A report maps step names to step results. Steps may nest further results
(plugin restore inside application restore, backup/upload/clean inside a
worker report). A report's status is true only if every recorded step,
at any depth, is true.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Union


@dataclass
class StepResult:
    """Outcome of one pipeline step."""

    status: bool = True
    error: List[str] = field(default_factory=list)
    msg: List[str] = field(default_factory=list)
    children: Dict[str, "StepResult"] = field(default_factory=dict)

    def fail(self, message: str) -> "StepResult":
        self.status = False
        self.error.append(message)
        return self

    def note(self, message: str) -> "StepResult":
        self.msg.append(message)
        return self

    def add_child(self, name: str, child: "StepResult") -> "StepResult":
        self.children[name] = child
        return child

    @property
    def ok(self) -> bool:
        return self.status and all(child.ok for child in self.children.values())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.ok}
        if self.error:
            data["error"] = list(self.error)
        if self.msg:
            data["msg"] = list(self.msg)
        for name, child in self.children.items():
            data[name] = child.to_dict()
        return data


@dataclass
class OperationReport:
    """Ordered map of step name to result, with an aggregate status."""

    operation: Dict[str, Union[StepResult, "OperationReport"]] = field(
        default_factory=dict
    )

    def record(self, name: str, result: Union[StepResult, "OperationReport"]):
        self.operation[name] = result
        return result

    def get(self, name: str) -> Union[StepResult, "OperationReport", None]:
        return self.operation.get(name)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.operation.values())

    @property
    def status(self) -> bool:
        return self.ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.ok,
            "operation": {
                name: result.to_dict() for name, result in self.operation.items()
            },
        }
