from datetime import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .database import Base, get_db_session
from .main import app, init_db
from .models import (
    Employee,
    GradelevelClass,
    Period,
    PeriodTemplate,
    Role,
    Subject,
    SubjectClass,
    TemplateDay,
    User,
)
from .security import create_access_token


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(bind=engine, session_factory=sessionmaker(bind=engine, autoflush=False, future=True))
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = override_get_db_session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin(db):
    return db.query(User).filter(User.username == "admin").one()


@pytest.fixture
def make_user(db):
    """Create a user holding the given roles and return its auth headers."""

    def _make(username: str, *role_names: str) -> dict:
        roles = db.query(Role).filter(Role.name.in_(role_names)).all()
        user = User(username=username, full_name=username.title(), password_hash="unused", roles=roles)
        db.add(user)
        db.commit()
        token = create_access_token(subject=username, roles=list(role_names))
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def admin_headers(admin):
    token = create_access_token(subject=admin.username, roles=admin.role_names)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def school(db):
    """Two teachers, two classes, three subject classes and a Mon-Wed template.

    Each day has three lessons and a break:
    P1 08:00, P2 09:00, Break 10:00, P3 10:30.
    """
    smith = Employee(employee_id="E001", full_name="Alice Smith")
    jones = Employee(employee_id="E002", full_name="Bob Jones")
    maths = Subject(code="MATH", name="Mathematics")
    english = Subject(code="ENG", name="English")
    art = Subject(code="ART", name="Art")
    form1 = GradelevelClass(name="Form 1", stream="A")
    form2 = GradelevelClass(name="Form 2", stream="A")
    db.add_all([smith, jones, maths, english, art, form1, form2])
    db.flush()

    maths_f1 = SubjectClass(subject_id=maths.id, employee_number="E001", gradelevel_class_id=form1.id,
                            periods_per_week=2)
    english_f1 = SubjectClass(subject_id=english.id, employee_number="E002", gradelevel_class_id=form1.id,
                              periods_per_week=1)
    art_f2 = SubjectClass(subject_id=art.id, employee_number="E001", gradelevel_class_id=form2.id,
                          periods_per_week=1)
    db.add_all([maths_f1, english_f1, art_f2])

    template = PeriodTemplate(name="Main", academic_year="2025", term="Term 1")
    periods = {}
    for day_name in ("Monday", "Tuesday", "Wednesday"):
        day = TemplateDay(day_of_week=day_name)
        day.periods = [
            Period(name="P1", start_time=time(8), end_time=time(9), sort_order=1),
            Period(name="P2", start_time=time(9), end_time=time(10), sort_order=2),
            Period(name="Break", start_time=time(10), end_time=time(10, 30), period_type="Break",
                   is_break=True, sort_order=3),
            Period(name="P3", start_time=time(10, 30), end_time=time(11, 30), sort_order=4),
        ]
        template.days.append(day)
        periods[day_name] = day.periods
    db.add(template)
    db.commit()

    return {
        "template": template,
        "periods": periods,
        "classes": {"form1": form1, "form2": form2},
        "subject_classes": {"maths_f1": maths_f1, "english_f1": english_f1, "art_f2": art_f2},
    }
