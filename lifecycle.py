"""Ciclo de vida de los contratos de alquiler y de sus pagos.

Cada operación escribe todos sus registros (contrato, inspecciones, daños,
vehículo, pagos y auditoría) en una sola transacción de la sesión: o se
aplican todos los cambios, o ninguno. La sesión se recibe como parámetro.

Estados del contrato: ``en_cours`` -> ``terminee``, solo mediante la
devolución del vehículo.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crud import get_car, get_client, record_audit
from errors import FieldValidationError, RecordNotFoundError, StateConflictError
from finance import check_payment, rental_days, rental_summary, rental_total
from models import Damage, Inspection, Payment, Rental
from schemas import (CheckIn, DriverSnapshot, InspectionChecklist, PaymentBase,
                     PaymentCreate, RentalCreate, RentalExtension,
                     VehicleSnapshot)

logger = logging.getLogger(__name__)

CONTRACT_PREFIX = "C"
CONTRACT_NUMBER_ATTEMPTS = 2


def contract_prefix(when: datetime) -> str:
    return f"{CONTRACT_PREFIX}-{when.year:04d}-{when.month:02d}-"


def next_contract_number(db: Session, when: datetime) -> str:
    """Siguiente número del mes: mayor sufijo emitido en el mes + 1 (001 si no hay)."""
    prefix = contract_prefix(when)
    numbers = db.query(Rental.contract_number).filter(Rental.contract_number.like(prefix + "%")).all()
    highest = 0
    for (number,) in numbers:
        suffix = number[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{prefix}{highest + 1:03d}"


def driver_snapshot(client) -> dict:
    return DriverSnapshot(
        nom_prenom=client.nom,
        cin=client.cin,
        permis_no=client.permis_no,
        permis_date_delivrance=client.permis_date_delivrance,
        telephone=client.telephone,
    ).model_dump(mode="json")


def vehicle_snapshot(car) -> dict:
    return VehicleSnapshot(
        car_id=car.id,
        immatriculation=car.immat,
        marque=car.marque,
        modele=car.modele,
        modele_annee=car.modele_annee,
        couleur=car.couleur,
        carburant_type=car.carburant_type,
        transmission=car.transmission,
        photo_url=car.photo_url,
    ).model_dump(mode="json")


def build_inspection(type_: str, data: InspectionChecklist, kilometrage: int, timestamp: datetime) -> Inspection:
    inspection = Inspection(
        type=type_,
        timestamp=timestamp,
        kilometrage=kilometrage,
        carburant_niveau=data.carburant_niveau,
        roue_secours=data.roue_secours,
        cric=data.cric,
        gilet_triangle=data.gilet_triangle,
        poste_radio=data.poste_radio,
        double_cles=data.double_cles,
        lavage=data.lavage,
        notes=data.notes,
        photos=list(data.photos),
    )
    for damage in data.damages:
        inspection.damages.append(Damage(**damage.model_dump()))
    return inspection


def get_rental(db: Session, rental_id: int):
    return db.query(Rental).filter(Rental.id == rental_id).first()


def get_active_rental(db: Session, rental_id: int):
    rental = get_rental(db, rental_id)
    if rental is None or rental.archived_at is not None:
        return None
    return rental


def get_rentals(db: Session, skip: int = 0, limit: int = 100, statut: Optional[str] = None,
                archived: bool = False):
    """Vista activa por defecto; ``archived=True`` devuelve el registro completo."""
    query = db.query(Rental)
    if not archived:
        query = query.filter(Rental.archived_at.is_(None))
    if statut:
        query = query.filter(Rental.statut == statut)
    return query.order_by(Rental.created_at.desc(), Rental.id.desc()).offset(skip).limit(limit).all()


# Operaciones de contratos
def create_contract(db: Session, data: RentalCreate, user=None, now: Optional[datetime] = None):
    now = now or datetime.now()
    if data.date_fin < data.date_debut:
        raise FieldValidationError("dateFin", "La date de fin doit être postérieure ou égale à la date de début.")
    if data.date_debut.date() < now.date():
        raise FieldValidationError("dateDebut", "La date de début ne peut pas être dans le passé.")

    client = get_client(db, data.client_id)
    if client is None or client.archived_at is not None:
        raise FieldValidationError("clientId", "Veuillez sélectionner un client.")
    conducteur2 = None
    if data.conducteur2_client_id is not None:
        second = get_client(db, data.conducteur2_client_id)
        if second is None or second.archived_at is not None:
            raise FieldValidationError("conducteur2ClientId", "Deuxième conducteur introuvable.")
        if second.id == client.id:
            raise FieldValidationError("conducteur2ClientId", "Le deuxième conducteur doit être différent du locataire.")
        conducteur2 = driver_snapshot(second)
    elif data.conducteur2 is not None:
        conducteur2 = data.conducteur2.model_dump(mode="json")

    car = get_car(db, data.car_id)
    if car is None or car.archived_at is not None:
        raise FieldValidationError("carId", "Veuillez sélectionner une voiture.")
    if car.disponibilite != "disponible":
        raise StateConflictError(f"La voiture {car.immat} n'est pas disponible.")

    kilometrage = data.livraison.kilometrage
    if kilometrage is None:
        kilometrage = car.kilometrage or 0

    for attempt in range(1, CONTRACT_NUMBER_ATTEMPTS + 1):
        try:
            return _insert_contract(db, data, client, car, conducteur2, kilometrage, user, now)
        except IntegrityError:
            # Otro contrato tomó el mismo número entre la lectura y el commit
            if attempt == CONTRACT_NUMBER_ATTEMPTS:
                raise
            logger.warning("Numéro de contrat déjà pris, nouvelle tentative (%d)", attempt)
            db.refresh(car)
            if car.disponibilite != "disponible":
                raise StateConflictError(f"La voiture {car.immat} n'est pas disponible.")


def _insert_contract(db: Session, data: RentalCreate, client, car, conducteur2, kilometrage: int,
                     user, now: datetime):
    try:
        rental = Rental(
            contract_number=next_contract_number(db, now),
            client_id=client.id,
            car_id=car.id,
            locataire=driver_snapshot(client),
            conducteur2=conducteur2,
            vehicule=vehicle_snapshot(car),
            date_debut=data.date_debut,
            date_fin=data.date_fin,
            prix_par_jour=car.prix_par_jour,
            nbr_jours=rental_days(data.date_debut, data.date_fin),
            depot=data.depot,
            montant_total=rental_total(data.date_debut, data.date_fin, car.prix_par_jour),
            montant_paye=0.0,
            lieu_depart=data.lieu_depart,
            lieu_retour=data.lieu_retour,
            statut="en_cours",
            created_at=now,
        )
        rental.inspections.append(build_inspection("depart", data.livraison, kilometrage, now))
        db.add(rental)
        car.disponibilite = "louee"
        db.flush()
        record_audit(db, "rental", rental.id, "create", {
            "contractNumber": rental.contract_number,
            "carId": car.id,
            "montantTotal": rental.montant_total,
        }, user)
        db.commit()
    except Exception:
        db.rollback()
        logger.warning("Création du contrat annulée pour la voiture %s", car.immat)
        raise
    db.refresh(rental)
    logger.info("Contrat %s créé (%s, %.2f)", rental.contract_number, car.immat, rental.montant_total)
    return rental


def extend_contract(db: Session, rental_id: int, data: RentalExtension, user=None):
    rental = get_active_rental(db, rental_id)
    if rental is None:
        raise RecordNotFoundError("Contrat", rental_id)
    if rental.statut != "en_cours":
        raise StateConflictError("Seul un contrat en cours peut être prolongé.")
    if rental.date_debut is None:
        raise StateConflictError("Date de début inconnue : ce contrat ne peut pas être prolongé.")
    if data.date_fin < rental.date_debut:
        raise FieldValidationError("dateFin", "La date de fin ne peut pas être antérieure à la date de début.")

    total = rental_total(rental.date_debut, data.date_fin, rental.prix_par_jour,
                         montant_total=rental.montant_total)
    if total < (rental.montant_paye or 0):
        raise FieldValidationError(
            "dateFin",
            f"Le nouveau montant total ({total:.2f}) est inférieur au montant déjà payé ({rental.montant_paye:.2f}).",
        )

    try:
        rental.date_fin = data.date_fin
        if data.lieu_retour is not None:
            rental.lieu_retour = data.lieu_retour
        rental.nbr_jours = rental_days(rental.date_debut, data.date_fin)
        rental.montant_total = total
        record_audit(db, "rental", rental.id, "extend", {
            "dateFin": data.date_fin.isoformat(),
            "montantTotal": total,
        }, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(rental)
    logger.info("Contrat %s prolongé jusqu'au %s", rental.contract_number, rental.date_fin.date())
    return rental


def check_in(db: Session, rental_id: int, data: CheckIn, user=None):
    """Devolución del vehículo: inspección de retorno, cierre del contrato y liberación del coche."""
    try:
        rental = get_active_rental(db, rental_id)
        if rental is None:
            raise RecordNotFoundError("Contrat", rental_id)
        if rental.statut != "en_cours":
            raise StateConflictError("Ce contrat est déjà terminé.")

        car = get_car(db, rental.car_id) if rental.car_id is not None else None
        if car is None:
            raise RecordNotFoundError("Voiture", rental.car_id)

        # Sin inspección de salida: kilometraje actual del coche
        departure = rental.inspection("depart")
        start_km = departure.kilometrage if departure is not None else (car.kilometrage or 0)
        if data.kilometrage_retour < start_km:
            raise FieldValidationError(
                "kilometrageRetour",
                f"Le kilométrage de retour ne peut pas être inférieur au kilométrage de départ ({start_km} km).",
            )
        if rental.date_debut is not None and data.date_retour < rental.date_debut:
            raise FieldValidationError("dateRetour", "La date de retour ne peut pas être antérieure à la date de début.")

        rental.inspections.append(build_inspection("retour", data, data.kilometrage_retour, data.date_retour))
        rental.date_fin = data.date_retour
        if rental.date_debut is not None:
            rental.nbr_jours = rental_days(rental.date_debut, data.date_retour)
        rental.montant_total = rental_total(rental.date_debut, data.date_retour, rental.prix_par_jour,
                                            montant_total=rental.montant_total, nbr_jours=rental.nbr_jours)
        rental.statut = "terminee"

        car.kilometrage = data.kilometrage_retour
        car.disponibilite = "disponible"

        record_audit(db, "rental", rental.id, "check_in", {
            "kilometrageRetour": data.kilometrage_retour,
            "dateRetour": data.date_retour.isoformat(),
            "montantTotal": rental.montant_total,
        }, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(rental)
    logger.info("Contrat %s terminé, voiture %s disponible (%d km)",
                rental.contract_number, car.immat, car.kilometrage)
    return rental


def archive_rental(db: Session, rental_id: int, user=None, now: Optional[datetime] = None):
    """Retira el contrato y sus pagos de la vista activa; libera el coche si seguía alquilado."""
    now = now or datetime.now()
    try:
        rental = get_active_rental(db, rental_id)
        if rental is None:
            raise RecordNotFoundError("Contrat", rental_id)
        rental.archived_at = now
        for payment in rental.payments:
            if payment.archived_at is None:
                payment.archived_at = now
        if rental.statut == "en_cours" and rental.car_id is not None:
            car = get_car(db, rental.car_id)
            if car is not None and car.disponibilite == "louee":
                car.disponibilite = "disponible"
        record_audit(db, "rental", rental.id, "archive", {"contractNumber": rental.contract_number}, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Contrat %s archivé", rental.contract_number)
    return rental


def purge_archived_rental(db: Session, rental_id: int, user=None):
    rental = get_rental(db, rental_id)
    if rental is None:
        raise RecordNotFoundError("Contrat", rental_id)
    if rental.archived_at is None:
        raise StateConflictError("Seuls les contrats archivés peuvent être supprimés définitivement.")
    try:
        record_audit(db, "rental", rental.id, "purge", {"contractNumber": rental.contract_number}, user)
        db.delete(rental)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Contrat archivé %s supprimé définitivement", rental.contract_number)


# Operaciones de pagos
def get_payment(db: Session, payment_id: int):
    return db.query(Payment).filter(Payment.id == payment_id).first()


def get_payments(db: Session, rental_id: Optional[int] = None, skip: int = 0, limit: int = 100,
                 archived: bool = False):
    query = db.query(Payment)
    if not archived:
        query = query.filter(Payment.archived_at.is_(None))
    if rental_id is not None:
        query = query.filter(Payment.rental_id == rental_id)
    return query.order_by(Payment.payment_date.desc(), Payment.id.desc()).offset(skip).limit(limit).all()


def record_payment(db: Session, data: PaymentCreate, user=None):
    try:
        rental = get_active_rental(db, data.rental_id)
        if rental is None:
            raise RecordNotFoundError("Contrat", data.rental_id)
        new_paid = check_payment(rental_summary(rental).total, rental.montant_paye, data.amount)

        payment = Payment(
            rental_id=rental.id,
            amount=round(data.amount, 2),
            payment_date=data.payment_date,
            payment_method=data.payment_method,
            status=data.status,
            client_name=rental.locataire.get("nom_prenom"),
            contract_number=rental.contract_number,
        )
        db.add(payment)
        rental.montant_paye = new_paid
        db.flush()
        record_audit(db, "payment", payment.id, "create", {
            "contractNumber": rental.contract_number,
            "amount": payment.amount,
            "montantPaye": new_paid,
        }, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(payment)
    logger.info("Paiement de %.2f enregistré sur %s", payment.amount, payment.contract_number)
    return payment


def update_payment(db: Session, payment_id: int, data: PaymentBase, user=None):
    try:
        payment = get_payment(db, payment_id)
        if payment is None or payment.archived_at is not None:
            raise RecordNotFoundError("Paiement", payment_id)
        rental = payment.rental
        if rental is None or rental.archived_at is not None:
            raise RecordNotFoundError("Contrat", payment.rental_id)

        paid_without = round((rental.montant_paye or 0) - payment.amount, 2)
        new_paid = check_payment(rental_summary(rental).total, paid_without, data.amount)

        payment.amount = round(data.amount, 2)
        payment.payment_date = data.payment_date
        payment.payment_method = data.payment_method
        payment.status = data.status
        rental.montant_paye = new_paid
        record_audit(db, "payment", payment.id, "update", {
            "amount": payment.amount,
            "montantPaye": new_paid,
        }, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(payment)
    return payment


def delete_payment(db: Session, payment_id: int, user=None, now: Optional[datetime] = None):
    """Archiva el pago y descuenta su importe del contrato en la misma transacción."""
    try:
        payment = get_payment(db, payment_id)
        if payment is None or payment.archived_at is not None:
            raise RecordNotFoundError("Paiement", payment_id)
        rental = payment.rental
        if rental is None:
            raise RecordNotFoundError("Contrat", payment.rental_id)
        payment.archived_at = now or datetime.now()
        rental.montant_paye = max(0.0, round((rental.montant_paye or 0) - payment.amount, 2))
        record_audit(db, "payment", payment.id, "delete", {
            "amount": payment.amount,
            "montantPaye": rental.montant_paye,
        }, user)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Paiement de %.2f annulé sur %s", payment.amount, payment.contract_number)
    return payment


def purge_archived_payment(db: Session, payment_id: int, user=None):
    payment = get_payment(db, payment_id)
    if payment is None:
        raise RecordNotFoundError("Paiement", payment_id)
    if payment.archived_at is None:
        raise StateConflictError("Seuls les paiements archivés peuvent être supprimés définitivement.")
    try:
        record_audit(db, "payment", payment.id, "purge", {"amount": payment.amount}, user)
        db.delete(payment)
        db.commit()
    except Exception:
        db.rollback()
        raise
