"""gradeflow - a reactive gradebook engine: formulas, live grade records and what-if grades.

Usage::

    from gradeflow import Column, Gradebook, GradeRecordCache, WhatIfEngine

    gradebook = Gradebook([
        Column(id=1, slug="hw-1", max_score=100, released=True),
        Column(id=2, slug="hw-2", max_score=100, released=True),
    ])
    gradebook.add_column(
        Column(id=3, slug="average", score_expression='mean(gradebook_columns("hw-*"))')
    )

    cache = GradeRecordCache(backend, stream, class_id=7, student_id="s1")
    await cache.load()

    what_if = WhatIfEngine(gradebook, cache, "s1")
    what_if.set_what_if_grade(2, 95)
    print(what_if.get_grade(3).what_if)
"""

from gradeflow._cache import (
    CacheSettings,
    CacheState,
    ChangeMessage,
    ChangeStream,
    GradebookBackend,
    GradeRecordCache,
    Operation,
)
from gradeflow._gradebook import ColumnInUseError, Gradebook
from gradeflow._observer import Multicast, Subscription
from gradeflow._scheduling import Debouncer, LoopScheduler, Scheduler
from gradeflow._types import (
    EXCUSED,
    MISSING,
    Assignment,
    CellState,
    Column,
    ColumnRefs,
    IncompleteValuesAdvice,
    RosterEntry,
    Scored,
    StudentColumnRecord,
    WhatIfGradeValue,
    classify_score,
)
from gradeflow._whatif import CircularRecalculationError, WhatIfEngine
from gradeflow.calc import (
    CalcError,
    CellRenderer,
    CircularDependencyError,
    DependencyValidationError,
    FormulaSyntaxError,
    IncompletePolicy,
    extract_and_validate_dependencies,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "Assignment",
    "CacheSettings",
    "CacheState",
    "CalcError",
    "CellRenderer",
    "CellState",
    "ChangeMessage",
    "ChangeStream",
    "CircularDependencyError",
    "CircularRecalculationError",
    "Column",
    "ColumnInUseError",
    "ColumnRefs",
    "Debouncer",
    "DependencyValidationError",
    "EXCUSED",
    "FormulaSyntaxError",
    "GradeRecordCache",
    "Gradebook",
    "GradebookBackend",
    "IncompletePolicy",
    "IncompleteValuesAdvice",
    "LoopScheduler",
    "MISSING",
    "Multicast",
    "Operation",
    "RosterEntry",
    "Scheduler",
    "Scored",
    "StudentColumnRecord",
    "Subscription",
    "WhatIfEngine",
    "WhatIfGradeValue",
    "classify_score",
    "extract_and_validate_dependencies",
]
