import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

import alerts
from auth import get_password_hash, get_user_by_email
from config import DEFAULT_COMPANY_NAME
from errors import FieldValidationError, RecordNotFoundError, StateConflictError
from finance import rental_summary
from models import (AuditLog, Car, Client, CompanySettings, MaintenanceEvent,
                    Rental, User)
from schemas import (CarCreate, CarUpdate, ClientBase, CompanySettingsBase,
                     MaintenanceFinish, MaintenanceStart, UserCreate)

logger = logging.getLogger(__name__)


def record_audit(db: Session, entity: str, entity_id, action: str, payload=None, user=None):
    """Añade una entrada de auditoría a la transacción en curso (sin commit)."""
    db.add(AuditLog(
        entity=entity,
        entity_id=entity_id,
        action=action,
        payload=payload,
        user_email=getattr(user, "email", None),
    ))

def get_audit_log(db: Session, entity: Optional[str] = None, skip: int = 0, limit: int = 100):
    query = db.query(AuditLog)
    if entity:
        query = query.filter(AuditLog.entity == entity)
    return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit).all()


# Operaciones de usuario
def create_user(db: Session, user: UserCreate, role: str = "agent"):
    db_user = User(
        email=user.email,
        display_name=user.display_name or user.email.split("@")[0],
        hashed_password=get_password_hash(user.password),
        providers=["password"],
        role=role,
    )
    try:
        db.add(db_user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(db_user)
    return db_user

def change_password(db: Session, user: User, new_password: str):
    if not user.can_change_password:
        raise StateConflictError(
            "Ce compte est connecté via un fournisseur externe : le mot de passe ne peut pas être modifié ici."
        )
    try:
        user.hashed_password = get_password_hash(new_password)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return user

def ensure_admin(db: Session, email: str, password: str):
    """Crea el administrador inicial si la base no tiene usuarios."""
    if db.query(User).count() > 0:
        return None
    admin = create_user(db, UserCreate(email=email, password=password, display_name="Admin"), role="admin")
    logger.info("Administrateur initial créé : %s", email)
    return admin


# Operaciones de vehículos
def _car_fields(car: CarCreate) -> dict:
    data = car.model_dump(exclude={"maintenance_schedule"})
    schedule = car.maintenance_schedule.model_dump() if car.maintenance_schedule else {}
    data.update({k: v for k, v in schedule.items()})
    return data

def _check_unique_car(db: Session, car: CarCreate, car_id: Optional[int] = None):
    other = get_car_by_immat(db, car.immat)
    if other is not None and other.id != car_id:
        raise FieldValidationError("immat", "Une voiture avec cette immatriculation existe déjà.")
    other = db.query(Car).filter(Car.num_chassis == car.num_chassis).first()
    if other is not None and other.id != car_id:
        raise FieldValidationError("numChassis", "Une voiture avec ce numéro de châssis existe déjà.")

def create_car(db: Session, car: CarCreate, user=None):
    _check_unique_car(db, car)
    data = _car_fields(car)
    # Umbrales km no informados: siguiente hito según el kilometraje
    for field, value in alerts.initial_schedule(car.kilometrage).items():
        if data.get(field) is None:
            data[field] = value
    try:
        db_car = Car(**data, disponibilite="disponible")
        db.add(db_car)
        db.flush()
        if not db_car.photo_url:
            db_car.photo_url = f"https://picsum.photos/seed/{db_car.id}/600/400"
        record_audit(db, "car", db_car.id, "create", {"immat": db_car.immat}, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(db_car)
    logger.info("Voiture ajoutée : %s", db_car.immat)
    return db_car

def get_car(db: Session, car_id: int):
    return db.query(Car).filter(Car.id == car_id).first()

def get_car_by_immat(db: Session, immat: str):
    return db.query(Car).filter(Car.immat == immat).first()

def get_cars(db: Session, skip: int = 0, limit: int = 100, disponibilite: Optional[str] = None,
             archived: bool = False):
    query = db.query(Car)
    if archived:
        query = query.filter(Car.archived_at.isnot(None))
    else:
        query = query.filter(Car.archived_at.is_(None))
    if disponibilite:
        query = query.filter(Car.disponibilite == disponibilite)
    return query.order_by(Car.marque, Car.modele, Car.id).offset(skip).limit(limit).all()

def update_car(db: Session, car_id: int, car: CarUpdate, user=None):
    db_car = get_car(db, car_id)
    if db_car is None or db_car.archived_at is not None:
        raise RecordNotFoundError("Voiture", car_id)
    _check_unique_car(db, car, car_id)
    data = car.model_dump(exclude={"maintenance_schedule"})
    if car.maintenance_schedule is not None:
        data.update(car.maintenance_schedule.model_dump())
    if not data.get("photo_url"):
        data["photo_url"] = db_car.photo_url
    try:
        for key, value in data.items():
            setattr(db_car, key, value)
        record_audit(db, "car", db_car.id, "update", {"immat": db_car.immat}, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(db_car)
    return db_car

def archive_car(db: Session, car_id: int, user=None, now: Optional[datetime] = None):
    db_car = get_car(db, car_id)
    if db_car is None or db_car.archived_at is not None:
        raise RecordNotFoundError("Voiture", car_id)
    if db_car.disponibilite == "louee":
        raise StateConflictError("Impossible d'archiver une voiture actuellement louée.")
    try:
        db_car.archived_at = now or datetime.now()
        record_audit(db, "car", db_car.id, "archive", {"immat": db_car.immat}, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Voiture archivée : %s", db_car.immat)
    return db_car

def purge_archived_car(db: Session, car_id: int, user=None):
    db_car = get_car(db, car_id)
    if db_car is None:
        raise RecordNotFoundError("Voiture", car_id)
    if db_car.archived_at is None:
        raise StateConflictError("Seules les voitures archivées peuvent être supprimées définitivement.")
    try:
        # Los contratos conservan su copia del vehículo
        for rental in db_car.rentals:
            rental.car_id = None
        record_audit(db, "car", db_car.id, "purge", {"immat": db_car.immat}, user)
        db.delete(db_car)
        db.commit()
    except Exception:
        db.rollback()
        raise

def start_maintenance(db: Session, car_id: int, data: MaintenanceStart, user=None,
                      now: Optional[datetime] = None):
    try:
        db_car = get_car(db, car_id)
        if db_car is None or db_car.archived_at is not None:
            raise RecordNotFoundError("Voiture", car_id)
        if db_car.disponibilite != "disponible":
            raise StateConflictError("Seule une voiture disponible peut être mise en maintenance.")
        db_car.disponibilite = "maintenance"
        db_car.maintenance_start_date = now or datetime.now()
        db_car.maintenance_reason = data.reason
        db_car.maintenance_notes = data.notes or ""
        record_audit(db, "car", db_car.id, "maintenance_start", {"reason": data.reason}, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(db_car)
    return db_car

def finish_maintenance(db: Session, car_id: int, data: MaintenanceFinish, user=None):
    try:
        db_car = get_car(db, car_id)
        if db_car is None or db_car.archived_at is not None:
            raise RecordNotFoundError("Voiture", car_id)
        if db_car.disponibilite != "maintenance":
            raise StateConflictError("Cette voiture n'est pas en maintenance.")

        db_car.disponibilite = "disponible"
        db_car.maintenance_start_date = None
        db_car.maintenance_reason = None
        db_car.maintenance_notes = None

        event = data.maintenance_event if data.add_to_history else None
        if event is not None:
            duplicate = any(
                e.date.date() == event.date.date()
                and e.type_intervention == event.type_intervention
                and e.kilometrage == event.kilometrage
                for e in db_car.maintenance_history
            )
            if not duplicate:
                db_car.maintenance_history.append(MaintenanceEvent(**event.model_dump()))
            db_car.kilometrage = max(db_car.kilometrage or 0, event.kilometrage)
            for field, value in alerts.schedule_from_history(db_car.maintenance_history,
                                                             db_car.kilometrage).items():
                setattr(db_car, field, value)

        record_audit(db, "car", db_car.id, "maintenance_finish",
                     event.model_dump(mode="json") if event else None, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(db_car)
    return db_car


# Operaciones de clientes
def create_client(db: Session, client: ClientBase, user=None):
    if get_client_by_cin(db, client.cin):
        raise FieldValidationError("cin", "Un client avec cette CIN existe déjà.")
    try:
        db_client = Client(**client.model_dump())
        db.add(db_client)
        db.flush()
        record_audit(db, "client", db_client.id, "create", {"cin": db_client.cin}, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(db_client)
    return db_client

def get_client(db: Session, client_id: int):
    return db.query(Client).filter(Client.id == client_id).first()

def get_client_by_cin(db: Session, cin: str):
    return db.query(Client).filter(Client.cin == cin).first()

def get_clients(db: Session, skip: int = 0, limit: int = 100, search: Optional[str] = None):
    query = db.query(Client).filter(Client.archived_at.is_(None))
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Client.nom.ilike(pattern), Client.cin.ilike(pattern)))
    return query.order_by(Client.nom).offset(skip).limit(limit).all()

def update_client(db: Session, client_id: int, client: ClientBase, user=None):
    db_client = get_client(db, client_id)
    if db_client is None:
        raise RecordNotFoundError("Client", client_id)
    other = get_client_by_cin(db, client.cin)
    if other is not None and other.id != client_id:
        raise FieldValidationError("cin", "Un client avec cette CIN existe déjà.")
    try:
        for key, value in client.model_dump().items():
            setattr(db_client, key, value)
        record_audit(db, "client", db_client.id, "update", {"cin": db_client.cin}, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(db_client)
    return db_client

def archive_client(db: Session, client_id: int, user=None, now: Optional[datetime] = None):
    db_client = get_client(db, client_id)
    if db_client is None or db_client.archived_at is not None:
        raise RecordNotFoundError("Client", client_id)
    try:
        db_client.archived_at = now or datetime.now()
        record_audit(db, "client", db_client.id, "archive", {"cin": db_client.cin}, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return db_client


# Ajustes de la agencia
def get_company_settings(db: Session):
    settings = db.query(CompanySettings).first()
    if settings is None:
        return CompanySettings(company_name=DEFAULT_COMPANY_NAME, logo_url="", adresse="", telephone="")
    return settings

def update_company_settings(db: Session, data: CompanySettingsBase, user=None):
    try:
        settings = db.query(CompanySettings).first()
        if settings is None:
            settings = CompanySettings(id=1)
            db.add(settings)
        for key, value in data.model_dump().items():
            setattr(settings, key, value if value is not None else "")
        record_audit(db, "settings", 1, "update", data.model_dump(), user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(settings)
    return settings


# Tablero
def get_dashboard_stats(db: Session, today: Optional[date] = None):
    today = today or date.today()
    cars = get_cars(db, limit=None)
    first_day = datetime(today.year, today.month, 1)
    rentals = db.query(Rental).filter(Rental.archived_at.is_(None)).all()
    monthly = [r for r in rentals if r.created_at and r.created_at >= first_day]
    return {
        "total_cars": len(cars),
        "available_cars": sum(1 for c in cars if c.disponibilite == "disponible"),
        "active_rentals": sum(1 for r in rentals if r.statut == "en_cours"),
        "monthly_revenue": round(sum(rental_summary(r).total for r in monthly), 2),
        "outstanding_balance": round(sum(max(rental_summary(r).reste, 0) for r in rentals), 2),
        "alerts": alerts.fleet_alerts(cars, today),
    }
