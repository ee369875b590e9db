import logging
import os
from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import ai
import alerts
import crud
import lifecycle
import models
import schemas
from auth import (authenticate_user, create_access_token, get_current_active_user,
                  get_user_by_email, require_admin, verify_password)
from config import (ACCESS_TOKEN_EXPIRE_MINUTES, ADMIN_EMAIL, ADMIN_PASSWORD, CURRENCY,
                    LOG_LEVEL, is_development)
from database import SessionLocal, engine, get_db
from errors import (DomainError, ExternalServiceError, FieldValidationError,
                    PermissionDeniedError, RecordNotFoundError, StateConflictError,
                    error_emitter, log_permission_error)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Crear las tablas en la base de datos
models.Base.metadata.create_all(bind=engine)

if is_development():
    error_emitter.on("permission-error", log_permission_error)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = SessionLocal()
    try:
        crud.ensure_admin(db, ADMIN_EMAIL, ADMIN_PASSWORD)
    finally:
        db.close()
    yield


app = FastAPI(title="Location Auto", lifespan=lifespan)

templates = Jinja2Templates(directory=os.path.join(os.path.dirname(__file__), "templates"))

# Configuración CORS (para desarrollo)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Errores de dominio -> respuestas HTTP
@app.exception_handler(FieldValidationError)
async def field_validation_handler(request: Request, exc: FieldValidationError):
    logger.warning("%s %s rejeté (%s) : %s", request.method, request.url.path, exc.field, exc.message)
    return JSONResponse(status_code=422, content={"detail": exc.message, "field": exc.field})

@app.exception_handler(PermissionDeniedError)
async def permission_denied_handler(request: Request, exc: PermissionDeniedError):
    logger.warning("%s %s refusé pour permissions insuffisantes", request.method, request.url.path)
    error_emitter.emit("permission-error", exc)
    return JSONResponse(status_code=403, content={"detail": "Permissions insuffisantes."})

@app.exception_handler(RecordNotFoundError)
async def record_not_found_handler(request: Request, exc: RecordNotFoundError):
    logger.error("%s %s annulé : %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(StateConflictError)
async def state_conflict_handler(request: Request, exc: StateConflictError):
    logger.warning("%s %s refusé : %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(ExternalServiceError)
async def external_service_handler(request: Request, exc: ExternalServiceError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})

@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    # Escrituras concurrentes que chocan con una restricción única
    logger.error("%s %s annulé par la base : %s", request.method, request.url.path, exc.orig)
    return JSONResponse(
        status_code=409,
        content={"detail": "Conflit d'enregistrement : la donnée existe déjà, veuillez réessayer."},
    )


# Rutas de autenticación
@app.post("/token", response_model=schemas.Token)
async def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Email ou mot de passe incorrect",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user.email}, expires_delta=access_token_expires
    )
    return {"access_token": access_token, "token_type": "bearer"}

@app.post("/users/", response_model=schemas.User)
def create_user(
    user: schemas.UserCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Crea un agente (solo administradores)"""
    require_admin(current_user, request.url.path, "create", {"email": user.email})
    if get_user_by_email(db, email=user.email):
        raise FieldValidationError("email", "Email déjà enregistré")
    return crud.create_user(db=db, user=user)

@app.get("/users/me/", response_model=schemas.User)
async def read_users_me(current_user: models.User = Depends(get_current_active_user)):
    return current_user

@app.post("/users/me/password", response_model=schemas.User)
def change_my_password(
    data: schemas.PasswordChange,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Cambia la contraseña (solo cuentas email/contraseña)"""
    if current_user.can_change_password and not verify_password(data.current_password,
                                                                current_user.hashed_password):
        raise FieldValidationError("currentPassword", "Mot de passe actuel incorrect.")
    return crud.change_password(db, current_user, data.new_password)


# Rutas para vehículos
@app.get("/cars/", response_model=List[schemas.Car])
def read_cars(
    skip: int = 0,
    limit: int = 100,
    disponibilite: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Vehículos activos, con filtro opcional por disponibilidad"""
    return crud.get_cars(db, skip=skip, limit=limit, disponibilite=disponibilite)

@app.post("/cars/", response_model=schemas.Car, status_code=status.HTTP_201_CREATED)
def create_car(
    car: schemas.CarCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return crud.create_car(db=db, car=car, user=current_user)

@app.get("/cars/{car_id}", response_model=schemas.Car)
def read_car(
    car_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    db_car = crud.get_car(db, car_id=car_id)
    if db_car is None:
        raise HTTPException(status_code=404, detail="Voiture introuvable")
    return db_car

@app.put("/cars/{car_id}", response_model=schemas.Car)
def update_car(
    car_id: int,
    car: schemas.CarUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Actualiza los datos del vehículo; la disponibilidad solo cambia por contratos y mantenimiento"""
    return crud.update_car(db=db, car_id=car_id, car=car, user=current_user)

@app.delete("/cars/{car_id}", response_model=schemas.Car)
def archive_car(
    car_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Archiva el vehículo (rechazado mientras está alquilado)"""
    return crud.archive_car(db=db, car_id=car_id, user=current_user)

@app.post("/cars/{car_id}/maintenance/start", response_model=schemas.Car)
def start_car_maintenance(
    car_id: int,
    data: schemas.MaintenanceStart,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return crud.start_maintenance(db, car_id, data, user=current_user)

@app.post("/cars/{car_id}/maintenance/finish", response_model=schemas.Car)
def finish_car_maintenance(
    car_id: int,
    data: schemas.MaintenanceFinish,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Termina el mantenimiento y, opcionalmente, lo añade al historial"""
    return crud.finish_maintenance(db, car_id, data, user=current_user)

@app.get("/cars/{car_id}/print", response_class=HTMLResponse)
def print_car(
    car_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Ficha del vehículo para imprimir"""
    db_car = crud.get_car(db, car_id=car_id)
    if db_car is None:
        raise HTTPException(status_code=404, detail="Voiture introuvable")
    return templates.TemplateResponse(request, "car_sheet.html", {
        "car": db_car,
        "settings": crud.get_company_settings(db),
        "alerts": alerts.fleet_alerts([db_car]),
        "currency": CURRENCY,
    })


# Rutas para clientes
@app.get("/clients/", response_model=List[schemas.Client])
def read_clients(
    skip: int = 0,
    limit: int = 100,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Clientes activos, con búsqueda por nombre o CIN"""
    return crud.get_clients(db, skip=skip, limit=limit, search=search)

@app.post("/clients/", response_model=schemas.Client, status_code=status.HTTP_201_CREATED)
def create_client(
    client: schemas.ClientBase,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return crud.create_client(db=db, client=client, user=current_user)

@app.get("/clients/{client_id}", response_model=schemas.Client)
def read_client(
    client_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    db_client = crud.get_client(db, client_id=client_id)
    if db_client is None:
        raise HTTPException(status_code=404, detail="Client introuvable")
    return db_client

@app.put("/clients/{client_id}", response_model=schemas.Client)
def update_client(
    client_id: int,
    client: schemas.ClientBase,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return crud.update_client(db=db, client_id=client_id, client=client, user=current_user)

@app.delete("/clients/{client_id}", response_model=schemas.Client)
def archive_client(
    client_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return crud.archive_client(db=db, client_id=client_id, user=current_user)


# Rutas para contratos
@app.get("/rentals/", response_model=List[schemas.Rental])
def read_rentals(
    skip: int = 0,
    limit: int = 100,
    statut: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Contratos activos, los más recientes primero"""
    return lifecycle.get_rentals(db, skip=skip, limit=limit, statut=statut)

@app.post("/rentals/", response_model=schemas.RentalDetail, status_code=status.HTTP_201_CREATED)
def create_rental(
    rental: schemas.RentalCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Firma un contrato: inspección de salida, contrato y coche alquilado en una sola transacción"""
    try:
        return lifecycle.create_contract(db=db, data=rental, user=current_user)
    except DomainError:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.get("/rentals/{rental_id}", response_model=schemas.RentalDetail)
def read_rental(
    rental_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    db_rental = lifecycle.get_rental(db, rental_id=rental_id)
    if db_rental is None:
        raise HTTPException(status_code=404, detail="Contrat introuvable")
    return db_rental

@app.patch("/rentals/{rental_id}/extension", response_model=schemas.RentalDetail)
def extend_rental(
    rental_id: int,
    data: schemas.RentalExtension,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Prolonga un contrato en curso (fecha de fin y lugar de retorno)"""
    return lifecycle.extend_contract(db, rental_id, data, user=current_user)

@app.post("/rentals/{rental_id}/check-in", response_model=schemas.RentalDetail)
def check_in_rental(
    rental_id: int,
    data: schemas.CheckIn,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Devolución del vehículo"""
    return lifecycle.check_in(db, rental_id, data, user=current_user)

@app.delete("/rentals/{rental_id}", response_model=schemas.Rental)
def archive_rental(
    rental_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Archiva el contrato y sus pagos; libera el coche si el contrato seguía en curso"""
    return lifecycle.archive_rental(db, rental_id, user=current_user)

@app.get("/rentals/{rental_id}/print", response_class=HTMLResponse)
def print_rental(
    rental_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Contrato para imprimir"""
    db_rental = lifecycle.get_rental(db, rental_id=rental_id)
    if db_rental is None:
        raise HTTPException(status_code=404, detail="Contrat introuvable")
    return templates.TemplateResponse(request, "contract.html", {
        "rental": db_rental,
        "resume": db_rental.resume,
        "depart": db_rental.inspection("depart"),
        "retour": db_rental.inspection("retour"),
        "settings": crud.get_company_settings(db),
        "currency": CURRENCY,
    })


@app.get("/rentals/{rental_id}/invoice", response_class=HTMLResponse)
def print_invoice(
    rental_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Factura / extracto de pagos del contrato (también archivado)"""
    db_rental = lifecycle.get_rental(db, rental_id=rental_id)
    if db_rental is None:
        raise HTTPException(status_code=404, detail="Contrat introuvable")
    payments = lifecycle.get_payments(db, rental_id=db_rental.id, limit=None, archived=True)
    return templates.TemplateResponse(request, "invoice.html", {
        "rental": db_rental,
        "resume": db_rental.resume,
        # Pagos anulados antes del archivado del contrato: fuera del total pagado
        "payments": [
            (p, p.archived_at is not None and p.archived_at != db_rental.archived_at)
            for p in sorted(payments, key=lambda p: (p.payment_date, p.id))
        ],
        "settings": crud.get_company_settings(db),
        "currency": CURRENCY,
        "today": date.today(),
    })


# Rutas para pagos
@app.get("/payments/", response_model=List[schemas.Payment])
def read_payments(
    rental_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return lifecycle.get_payments(db, rental_id=rental_id, skip=skip, limit=limit)

@app.post("/payments/", response_model=schemas.Payment, status_code=status.HTTP_201_CREATED)
def create_payment(
    payment: schemas.PaymentCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Registra un pago; nunca puede superar el resto a pagar del contrato"""
    return lifecycle.record_payment(db, payment, user=current_user)

@app.put("/payments/{payment_id}", response_model=schemas.Payment)
def update_payment(
    payment_id: int,
    payment: schemas.PaymentUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return lifecycle.update_payment(db, payment_id, payment, user=current_user)

@app.delete("/payments/{payment_id}", response_model=schemas.Payment)
def delete_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Anula el pago y lo descuenta del importe pagado del contrato"""
    return lifecycle.delete_payment(db, payment_id, user=current_user)


# Rutas para archivos
@app.get("/archives/rentals/", response_model=List[schemas.Rental])
def read_archived_rentals(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Registro completo de contratos, archivados incluidos"""
    return lifecycle.get_rentals(db, skip=skip, limit=limit, archived=True)

@app.delete("/archives/rentals/{rental_id}")
def purge_archived_rental(
    rental_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Elimina definitivamente un contrato archivado (solo administradores)"""
    require_admin(current_user, request.url.path, "delete")
    lifecycle.purge_archived_rental(db, rental_id, user=current_user)
    return {"message": "Contrat supprimé définitivement"}

@app.get("/archives/payments/", response_model=List[schemas.Payment])
def read_archived_payments(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return lifecycle.get_payments(db, skip=skip, limit=limit, archived=True)

@app.delete("/archives/payments/{payment_id}")
def purge_archived_payment(
    payment_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Elimina definitivamente un pago archivado (solo administradores)"""
    require_admin(current_user, request.url.path, "delete")
    lifecycle.purge_archived_payment(db, payment_id, user=current_user)
    return {"message": "Paiement supprimé définitivement"}

@app.get("/archives/cars/", response_model=List[schemas.Car])
def read_archived_cars(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return crud.get_cars(db, skip=skip, limit=limit, archived=True)

@app.delete("/archives/cars/{car_id}")
def purge_archived_car(
    car_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Elimina definitivamente un vehículo archivado (solo administradores)"""
    require_admin(current_user, request.url.path, "delete")
    crud.purge_archived_car(db, car_id, user=current_user)
    return {"message": "Voiture supprimée définitivement"}


# Alertas, tablero, ajustes y auditoría
@app.get("/alerts/", response_model=List[schemas.Alert])
def read_alerts(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Alertas de mantenimiento y documentos, las más urgentes primero"""
    return alerts.fleet_alerts(crud.get_cars(db, limit=None))

@app.get("/dashboard/stats/", response_model=schemas.DashboardStats)
def read_dashboard_stats(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return crud.get_dashboard_stats(db)

@app.get("/settings/company", response_model=schemas.CompanySettings)
def read_company_settings(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    return crud.get_company_settings(db)

@app.put("/settings/company", response_model=schemas.CompanySettings)
def update_company_settings(
    data: schemas.CompanySettingsBase,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Actualiza los datos de la agencia (solo administradores)"""
    require_admin(current_user, request.url.path, "update", data.model_dump(by_alias=True))
    return crud.update_company_settings(db, data, user=current_user)

@app.get("/audit/", response_model=List[schemas.AuditEntry])
def read_audit_log(
    request: Request,
    entity: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    require_admin(current_user, request.url.path, "list")
    return crud.get_audit_log(db, entity=entity, skip=skip, limit=limit)


# Ayudas de IA
@app.post("/ai/maintenance-prediction", response_model=ai.MaintenancePredictionOutput)
def predict_maintenance(
    data: ai.MaintenancePredictionInput,
    client: ai.AIClient = Depends(ai.get_ai_client),
    current_user: models.User = Depends(get_current_active_user)
):
    return client.predict_maintenance(data)

@app.post("/ai/car-image", response_model=ai.CarImageOutput)
def generate_car_image(
    data: ai.CarImageInput,
    client: ai.AIClient = Depends(ai.get_ai_client),
    current_user: models.User = Depends(get_current_active_user)
):
    return client.generate_car_image(data)


# Configuración para producción
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
