"""
Timetable Solver - greedy slot assignment with an OR-Tools CP-SAT alternative

Pure functions over plain dataclasses: the timetable service loads templates,
periods and subject classes from the database, hands them to this module and
persists whatever comes back. Nothing here touches a session.
"""

import logging
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Optional

from ortools.sat.python import cp_model

logger = logging.getLogger(__name__)

# Constants
DAYS = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']
DEFAULT_DAYS = DAYS[:5]
SUBJECT_PRIORITY = ['Mathematics', 'English', 'Science', 'Physics', 'Chemistry', 'Biology']
STRATEGIES = ('balanced', 'early', 'late', 'optimal')
NO_SLOT_MESSAGE = 'No available time slots found'

TEACHER_OVERLAP = 'Teacher_Overlap'
CLASS_OVERLAP = 'Class_Overlap'


@dataclass
class Slot:
    day: str
    period_id: int
    name: str
    start_time: object  # datetime.time, or any value ordered by start
    sort_order: int = 0
    is_break: bool = False
    end_time: object = None
    period_type: str = 'Lesson'


@dataclass
class LessonRequest:
    """A subject class that still needs `needed` lessons this week."""
    subject_class_id: int
    subject: str
    teacher: str  # employee number
    teacher_name: str
    class_key: Optional[int]  # gradelevel class id, None when the subject class has no class
    class_name: str
    needed: int
    scheduled_days: set = field(default_factory=set)


@dataclass
class Occupied:
    """An active entry already on the template."""
    teacher: str
    class_key: Optional[int]
    day: str
    period_id: int


@dataclass
class Placement:
    subject_class_id: int
    day: str
    period_id: int


@dataclass
class Unplaced:
    subject_class_id: int
    subject: str
    teacher_name: str
    class_name: str
    error: str = NO_SLOT_MESSAGE


@dataclass
class ScheduledLesson:
    """An active entry as seen by conflict detection and statistics."""
    entry_id: int
    day: str
    period_id: int
    period_name: str
    period_order: int
    start_time: object
    subject: str
    teacher: str
    teacher_name: str
    class_key: Optional[int]
    class_name: str


@dataclass
class DetectedConflict:
    conflict_type: str
    day: str
    period_id: int
    entry1_id: int
    entry2_id: int
    description: str


# Utility functions
def day_index(day: str) -> int:
    return DAYS.index(day) if day in DAYS else len(DAYS)


def subject_priority(subject: str) -> int:
    if subject in SUBJECT_PRIORITY:
        return SUBJECT_PRIORITY.index(subject)
    return len(SUBJECT_PRIORITY)


def order_requests(requests: list[LessonRequest]) -> list[LessonRequest]:
    """Core subjects first, then alphabetical by subject and class."""
    return sorted(
        requests,
        key=lambda r: (subject_priority(r.subject), r.subject, r.class_name or '', r.subject_class_id),
    )


def group_slots_by_day(slots: list[Slot]) -> dict[str, list[Slot]]:
    """Days in weekday order, periods by sort order then start time."""
    by_day: dict[str, list[Slot]] = defaultdict(list)
    for slot in slots:
        by_day[slot.day].append(slot)
    ordered = {}
    for day in sorted(by_day, key=day_index):
        ordered[day] = sorted(by_day[day], key=lambda s: (s.sort_order, s.start_time))
    return ordered


def build_availability(keys, slots_by_day: dict[str, list[Slot]]) -> dict:
    """Availability matrix key -> day -> period_id, true for every non-break period."""
    matrix = {}
    for key in keys:
        matrix[key] = {
            day: {s.period_id: not s.is_break for s in day_slots}
            for day, day_slots in slots_by_day.items()
        }
    return matrix


def select_period(candidates: list[Slot], strategy: str = 'balanced') -> Optional[Slot]:
    if not candidates:
        return None
    ordered = sorted(candidates, key=lambda s: s.start_time)
    if strategy == 'early':
        return ordered[0]
    if strategy == 'late':
        return ordered[-1]
    return ordered[len(ordered) // 2]


def _is_free(matrix: dict, key, day: str, period_id: int) -> bool:
    if key is None:
        return True
    return matrix.get(key, {}).get(day, {}).get(period_id, False)


def _availability(requests: list[LessonRequest], slots_by_day: dict, occupied: list[Occupied]):
    teachers = {r.teacher for r in requests} | {o.teacher for o in occupied}
    classes = {r.class_key for r in requests if r.class_key is not None}
    classes |= {o.class_key for o in occupied if o.class_key is not None}
    teacher_free = build_availability(teachers, slots_by_day)
    class_free = build_availability(classes, slots_by_day)
    for o in occupied:
        if o.day in teacher_free.get(o.teacher, {}):
            teacher_free[o.teacher][o.day][o.period_id] = False
        if o.class_key is not None and o.day in class_free.get(o.class_key, {}):
            class_free[o.class_key][o.day][o.period_id] = False
    return teacher_free, class_free


def generate_greedy(
    requests: list[LessonRequest],
    slots: list[Slot],
    occupied: list[Occupied] = None,
    strategy: str = 'balanced',
) -> tuple[list[Placement], list[Unplaced]]:
    """Place lessons one at a time, first day with a free period wins.

    A subject class gets at most one lesson per day. Each placement marks the
    slot busy for both the teacher and the gradelevel class before the next
    lesson is considered; there is no backtracking.
    """
    occupied = occupied or []
    slots_by_day = group_slots_by_day(slots)
    teacher_free, class_free = _availability(requests, slots_by_day, occupied)

    placements: list[Placement] = []
    unplaced: list[Unplaced] = []

    for req in order_requests(requests):
        used_days = set(req.scheduled_days)
        for _ in range(req.needed):
            chosen = None
            for day, day_slots in slots_by_day.items():
                if day in used_days:
                    continue
                candidates = [
                    s for s in day_slots
                    if not s.is_break
                    and _is_free(teacher_free, req.teacher, day, s.period_id)
                    and _is_free(class_free, req.class_key, day, s.period_id)
                ]
                chosen = select_period(candidates, strategy)
                if chosen:
                    break

            if chosen is None:
                logger.debug(f"  No slot for {req.subject} ({req.class_name}) - {req.teacher_name}")
                unplaced.append(Unplaced(
                    subject_class_id=req.subject_class_id,
                    subject=req.subject,
                    teacher_name=req.teacher_name,
                    class_name=req.class_name,
                ))
                continue

            teacher_free[req.teacher][chosen.day][chosen.period_id] = False
            if req.class_key is not None:
                class_free[req.class_key][chosen.day][chosen.period_id] = False
            used_days.add(chosen.day)
            placements.append(Placement(req.subject_class_id, chosen.day, chosen.period_id))

    return placements, unplaced


class SolutionCollector(cp_model.CpSolverSolutionCallback):
    """Collects solutions from the CP-SAT solver."""

    def __init__(self, variables: dict, max_solutions: int = 1):
        cp_model.CpSolverSolutionCallback.__init__(self)
        self._variables = variables
        self._max_solutions = max_solutions
        self._solutions = []

    def on_solution_callback(self):
        solution = {lid: self.Value(var) for lid, var in self._variables.items()}
        self._solutions.append(solution)
        if len(self._solutions) >= self._max_solutions:
            self.StopSearch()

    def get_solutions(self):
        return self._solutions


def solve_with_cpsat(
    requests: list[LessonRequest],
    slots: list[Slot],
    occupied: list[Occupied] = None,
    time_limit: float = 10.0,
    seed: int = 0,
    diagnostics: dict = None,
) -> Optional[list[Placement]]:
    """
    Place every required lesson at once with CP-SAT.

    One integer variable per lesson ranges over the lesson's free slots. Lessons
    sharing a teacher or a gradelevel class are all-different, and lessons of
    the same subject class land on different days.

    Returns None when the model is infeasible or no solution is found in time.
    """
    occupied = occupied or []
    slots_by_day = group_slots_by_day(slots)
    teacher_free, class_free = _availability(requests, slots_by_day, occupied)

    # Index every teachable slot in weekday/period order
    slot_index: list[Slot] = [s for day_slots in slots_by_day.values() for s in day_slots if not s.is_break]
    day_of_slot = [day_index(s.day) for s in slot_index]

    model = cp_model.CpModel()
    lesson_vars = {}
    lesson_days = {}
    lessons_by_teacher = defaultdict(list)
    lessons_by_class = defaultdict(list)
    lessons_by_subject_class = defaultdict(list)
    lesson_owner = {}

    lesson_id = 0
    for req in order_requests(requests):
        domain = [
            i for i, s in enumerate(slot_index)
            if s.day not in req.scheduled_days
            and _is_free(teacher_free, req.teacher, s.day, s.period_id)
            and _is_free(class_free, req.class_key, s.day, s.period_id)
        ]
        for _ in range(req.needed):
            if not domain:
                if diagnostics is not None:
                    diagnostics.setdefault('emptyDomains', []).append(req.subject_class_id)
                return None
            var = model.NewIntVarFromDomain(cp_model.Domain.FromValues(domain), f'lesson_{lesson_id}')
            day_var = model.NewIntVar(0, len(DAYS) - 1, f'day_{lesson_id}')
            model.AddElement(var, day_of_slot, day_var)

            lesson_vars[lesson_id] = var
            lesson_days[lesson_id] = day_var
            lesson_owner[lesson_id] = req
            lessons_by_teacher[req.teacher].append(lesson_id)
            if req.class_key is not None:
                lessons_by_class[req.class_key].append(lesson_id)
            lessons_by_subject_class[req.subject_class_id].append(lesson_id)
            lesson_id += 1

    if not lesson_vars:
        return []

    # Hard Constraint 1: No teacher conflicts
    for ids in lessons_by_teacher.values():
        if len(ids) > 1:
            model.AddAllDifferent([lesson_vars[i] for i in ids])

    # Hard Constraint 2: No class conflicts
    for ids in lessons_by_class.values():
        if len(ids) > 1:
            model.AddAllDifferent([lesson_vars[i] for i in ids])

    # Hard Constraint 3: One lesson per day per subject class
    for ids in lessons_by_subject_class.values():
        if len(ids) > 1:
            model.AddAllDifferent([lesson_days[i] for i in ids])

    model.AddDecisionStrategy(list(lesson_vars.values()), cp_model.CHOOSE_FIRST, cp_model.SELECT_MIN_VALUE)

    solver = cp_model.CpSolver()
    solver.parameters.random_seed = seed
    solver.parameters.max_time_in_seconds = time_limit
    solver.parameters.num_search_workers = 1  # Deterministic with seed

    collector = SolutionCollector(lesson_vars, max_solutions=1)
    status = solver.Solve(model, collector)

    status_names = {0: 'UNKNOWN', 1: 'MODEL_INVALID', 2: 'FEASIBLE', 3: 'INFEASIBLE', 4: 'OPTIMAL'}
    if diagnostics is not None:
        diagnostics['solverStatus'] = status_names.get(status, str(status))
        diagnostics['lessons'] = len(lesson_vars)

    if status not in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        return None

    solutions = collector.get_solutions()
    assignment = solutions[0] if solutions else {lid: solver.Value(var) for lid, var in lesson_vars.items()}

    placements = []
    for lid, idx in sorted(assignment.items()):
        slot = slot_index[idx]
        placements.append(Placement(lesson_owner[lid].subject_class_id, slot.day, slot.period_id))
    return placements


def generate_timetable(
    requests: list[LessonRequest],
    slots: list[Slot],
    occupied: list[Occupied] = None,
    strategy: str = 'balanced',
    time_limit: float = 10.0,
) -> dict:
    """
    Main entry point for timetable generation.

    Returns:
        Dict with status (success|partial|failed), placements, conflicts,
        strategy actually used and elapsed seconds.
    """
    start_time = time.time()
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown strategy '{strategy}'. Expected one of: {', '.join(STRATEGIES)}")

    diagnostics: dict = {}
    used = strategy
    if strategy == 'optimal':
        placements = solve_with_cpsat(requests, slots, occupied, time_limit=time_limit, diagnostics=diagnostics)
        if placements is None:
            logger.info(f"CP-SAT found no complete timetable ({diagnostics.get('solverStatus', 'no domain')}), falling back to greedy")
            placements, unplaced = generate_greedy(requests, slots, occupied, 'balanced')
            used = 'greedy-fallback'
        else:
            unplaced = []
    else:
        placements, unplaced = generate_greedy(requests, slots, occupied, strategy)

    if not unplaced:
        status = 'success'
    elif placements:
        status = 'partial'
    else:
        status = 'failed'

    return {
        'status': status,
        'placements': placements,
        'conflicts': unplaced,
        'strategy': used,
        'diagnostics': diagnostics,
        'elapsed': time.time() - start_time,
    }


def detect_conflicts(lessons: list[ScheduledLesson]) -> list[DetectedConflict]:
    """Pairwise scan of lessons sharing a day and period.

    Every pair is reported once with the lower entry id first. A pair that
    shares both teacher and class yields one conflict of each type.
    """
    by_slot: dict[tuple, list[ScheduledLesson]] = defaultdict(list)
    for lesson in lessons:
        by_slot[(lesson.day, lesson.period_id)].append(lesson)

    found = []
    for (day, period_id), group in by_slot.items():
        group = sorted(group, key=lambda l: l.entry_id)
        for i, e1 in enumerate(group):
            for e2 in group[i + 1:]:
                if e1.teacher == e2.teacher:
                    found.append((e1, DetectedConflict(
                        conflict_type=TEACHER_OVERLAP,
                        day=day,
                        period_id=period_id,
                        entry1_id=e1.entry_id,
                        entry2_id=e2.entry_id,
                        description=(
                            f"Teacher {e1.teacher_name} is assigned to both {e1.subject} ({e1.class_name}) "
                            f"and {e2.subject} ({e2.class_name}) at the same time"
                        ),
                    )))
                if e1.class_key is not None and e1.class_key == e2.class_key:
                    found.append((e1, DetectedConflict(
                        conflict_type=CLASS_OVERLAP,
                        day=day,
                        period_id=period_id,
                        entry1_id=e1.entry_id,
                        entry2_id=e2.entry_id,
                        description=(
                            f"Class {e1.class_name} has both {e1.subject} ({e1.teacher_name}) "
                            f"and {e2.subject} ({e2.teacher_name}) at the same time"
                        ),
                    )))

    found.sort(key=lambda pair: (day_index(pair[1].day), pair[0].period_order, pair[1].entry1_id, pair[1].entry2_id))
    return [conflict for _, conflict in found]


def compute_stats(
    lessons: list[ScheduledLesson],
    total_subject_classes: int,
    slots: Optional[list[Slot]] = None,
) -> dict:
    """Workload, day distribution and period utilization for a template.

    With `slots`, period utilization lists every configured period, including
    the ones nothing is scheduled in.
    """
    teachers = {l.teacher for l in lessons}
    days = {l.day for l in lessons}

    workload = {}
    for lesson in lessons:
        row = workload.setdefault(lesson.teacher, {
            'employee_number': lesson.teacher,
            'teacher_name': lesson.teacher_name,
            'total_periods': 0,
            'days': set(),
            'subjects': set(),
        })
        row['total_periods'] += 1
        row['days'].add(lesson.day)
        row['subjects'].add(lesson.subject)

    teacher_workload = [
        {
            'employee_number': row['employee_number'],
            'teacher_name': row['teacher_name'],
            'total_periods': row['total_periods'],
            'days_teaching': len(row['days']),
            'subjects_taught': len(row['subjects']),
        }
        for row in workload.values()
    ]
    teacher_workload.sort(key=lambda r: (-r['total_periods'], r['teacher_name']))

    day_counts = Counter(l.day for l in lessons)
    day_teachers = {}
    for lesson in lessons:
        day_teachers.setdefault(lesson.day, set()).add(lesson.teacher)
    day_distribution = [
        {'day_of_week': day, 'total_periods': day_counts[day], 'teachers': len(day_teachers[day])}
        for day in sorted(day_counts, key=day_index)
    ]

    # Every configured period gets a row, used or not
    period_rows = {}
    for slot in sorted(slots or [], key=lambda s: (day_index(s.day), s.sort_order, s.start_time)):
        period_rows[slot.period_id] = {
            'period_id': slot.period_id,
            'day_of_week': slot.day,
            'period_name': slot.name,
            'start_time': slot.start_time,
            'end_time': slot.end_time,
            'period_type': slot.period_type,
            'is_break': slot.is_break,
            'period_order': slot.sort_order,
            'usage_count': 0,
            'teachers_used': set(),
        }
    for lesson in sorted(lessons, key=lambda l: (day_index(l.day), l.period_order, l.start_time)):
        row = period_rows.setdefault(lesson.period_id, {
            'period_id': lesson.period_id,
            'day_of_week': lesson.day,
            'period_name': lesson.period_name,
            'start_time': lesson.start_time,
            'end_time': None,
            'period_type': 'Lesson',
            'is_break': False,
            'period_order': lesson.period_order,
            'usage_count': 0,
            'teachers_used': set(),
        })
        row['usage_count'] += 1
        row['teachers_used'].add(lesson.teacher)
    period_utilization = [
        dict(row, teachers_used=len(row['teachers_used']))
        for row in sorted(period_rows.values(),
                          key=lambda r: (day_index(r['day_of_week']), r['period_order'], r['start_time']))
    ]

    return {
        'basic_stats': {
            'total_subject_classes': total_subject_classes,
            'total_entries': len(lessons),
            'active_days': len(days),
            'teachers_involved': len(teachers),
        },
        'teacher_workload': teacher_workload,
        'day_distribution': day_distribution,
        'period_utilization': period_utilization,
    }
