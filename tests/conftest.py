import os
from datetime import date, datetime, time, timedelta

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import crud
import lifecycle
import schemas
from auth import create_access_token
from database import Base, get_db
from main import app

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin(db):
    return crud.create_user(db, schemas.UserCreate(email="admin@agence.ma", password="secret123"), role="admin")


@pytest.fixture
def agent(db):
    return crud.create_user(db, schemas.UserCreate(email="agent@agence.ma", password="secret123"))


def bearer(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}


@pytest.fixture
def admin_headers(admin):
    return bearer(admin)


@pytest.fixture
def agent_headers(agent):
    return bearer(agent)


def make_car(db, **overrides):
    data = dict(
        marque="Dacia",
        modele="Logan",
        immat="12345-A-6",
        num_chassis="VF1ABCDEF12345678",
        couleur="Blanc",
        prix_par_jour=250,
        kilometrage=42000,
        carburant_type="Diesel",
    )
    data.update(overrides)
    return crud.create_car(db, schemas.CarCreate(**data))


def make_client(db, **overrides):
    data = dict(
        nom="Yassine Alaoui",
        cin="AB123456",
        permis_no="P-778899",
        telephone="0612345678",
        adresse="12 Rue Agdal, Rabat",
    )
    data.update(overrides)
    return crud.create_client(db, schemas.ClientBase(**data))


def rental_payload(client_id, car_id, start, end, **overrides):
    data = dict(
        client_id=client_id,
        car_id=car_id,
        date_debut=start,
        date_fin=end,
        depot=2000,
        lieu_depart="Agence Rabat",
        livraison=schemas.DepartureInspection(carburant_niveau=1.0, roue_secours=True, cric=True),
    )
    data.update(overrides)
    return schemas.RentalCreate(**data)


# Fecha fija de firma: 1 de mayo de 2024, 9h
SIGNED_AT = datetime(2024, 5, 1, 9, 0)


@pytest.fixture
def car(db):
    return make_car(db)


@pytest.fixture
def customer(db):
    return make_client(db)


@pytest.fixture
def rental(db, car, customer):
    """Contrato de 3 días a 250/día (total 750)."""
    data = rental_payload(customer.id, car.id, datetime(2024, 5, 1, 10), datetime(2024, 5, 4, 10))
    return lifecycle.create_contract(db, data, now=SIGNED_AT)


def today_at(hour=10, days=0):
    return datetime.combine(date.today(), time(hour)) + timedelta(days=days)
