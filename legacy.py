"""Migración única de los contratos con inspecciones embebidas.

Los documentos antiguos guardan la inspección de salida y la de retorno dentro
del propio contrato (``livraison`` / ``reception``), con los daños como lista
de piezas o como mapa ``{pieza: tipo}``. Aquí se convierten en filas
``Inspection`` + ``Damage``; el resto de la aplicación solo lee ese formato.

Uso::

    python legacy.py contracts.json
"""
import argparse
import json
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from crud import get_car_by_immat, get_client_by_cin, record_audit
from errors import StateConflictError
from finance import rental_days, rental_total
from lifecycle import next_contract_number
from models import Damage, Inspection, Rental

logger = logging.getLogger(__name__)

# Tipos de daño de los documentos antiguos
DAMAGE_TYPE_ALIASES = {
    "rayure": "rayure",
    "scratch": "rayure",
    "bosse": "bosse",
    "dent": "bosse",
    "casse": "casse",
    "break": "casse",
    "broken": "casse",
    "a_remplacer": "a_remplacer",
    "replace": "a_remplacer",
    "needs-replacement": "a_remplacer",
}


def parse_datetime(value) -> Optional[datetime]:
    """Fechas ISO o marcas de tiempo exportadas (``{"seconds": ...}``)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            return None
        return datetime.fromtimestamp(seconds)
    text = str(value).replace("Z", "+00:00")
    return datetime.fromisoformat(text).replace(tzinfo=None)


def legacy_damages(dommages) -> tuple:
    """Devuelve (filas de daño, piezas sin tipo)."""
    rows, untyped = [], []
    if isinstance(dommages, dict):
        for part, damage_type in dommages.items():
            normalized = DAMAGE_TYPE_ALIASES.get(str(damage_type).lower())
            if normalized is None:
                untyped.append(part)
                continue
            rows.append(Damage(part_name=part, damage_type=normalized))
    elif isinstance(dommages, list):
        untyped.extend(str(part) for part in dommages)
    return rows, untyped


def legacy_inspection(data: Optional[dict], type_: str, fallback_km: int,
                      fallback_time: Optional[datetime]) -> Optional[Inspection]:
    if not data:
        return None
    timestamp = parse_datetime(data.get("dateHeure")) or fallback_time
    kilometrage = data.get("kilometrage")
    if type_ == "retour" and timestamp is None and kilometrage is None:
        return None

    damages, untyped = legacy_damages(data.get("dommages"))
    notes = data.get("dommagesNotes") or data.get("notes") or ""
    if untyped:
        # Piezas sin tipo de daño: se conservan como texto
        notes = (notes + "\n" if notes else "") + "Dommages : " + ", ".join(untyped)

    inspection = Inspection(
        type=type_,
        timestamp=timestamp or datetime.now(),
        kilometrage=int(kilometrage if kilometrage is not None else fallback_km),
        carburant_niveau=float(data.get("carburantNiveau") or 0),
        roue_secours=bool(data.get("roueSecours", False)),
        cric=bool(data.get("cric", False)),
        gilet_triangle=bool(data.get("giletTriangle", False)),
        poste_radio=bool(data.get("posteRadio", False)),
        double_cles=bool(data.get("doubleCles", False)),
        lavage=bool(data.get("lavage", False)),
        notes=notes or None,
        photos=list(data.get("photos") or []),
    )
    inspection.damages.extend(damages)
    return inspection


def reserve_car(db: Session, car, number: str):
    """Un contrato en curso importado deja el coche alquilado; un solo contrato activo por coche."""
    active = (
        db.query(Rental)
        .filter(Rental.car_id == car.id, Rental.statut == "en_cours", Rental.archived_at.is_(None))
        .first()
    )
    if active is not None:
        raise StateConflictError(
            f"La voiture {car.immat} est déjà louée (contrat {active.contract_number}) : import de {number} refusé."
        )
    if car.archived_at is not None or car.disponibilite == "maintenance":
        raise StateConflictError(f"La voiture {car.immat} n'est pas disponible : import de {number} refusé.")
    car.disponibilite = "louee"


def import_contract(db: Session, doc: dict) -> Optional[Rental]:
    """Crea el contrato normalizado; devuelve None si ya existía."""
    location = doc.get("location") or {}
    locataire = doc.get("locataire") or {}
    vehicule = doc.get("vehicule") or {}

    created_at = parse_datetime(doc.get("createdAt")) or datetime.now()
    # Sin fechas el total guardado es la única referencia
    date_debut = parse_datetime(location.get("dateDebut"))
    date_fin = parse_datetime(location.get("dateFin"))

    number = doc.get("contractNumber") or doc.get("contratId")
    if number and db.query(Rental).filter(Rental.contract_number == number).first():
        logger.info("Contrat %s déjà importé, ignoré", number)
        return None
    number = number or next_contract_number(db, created_at)

    prix = float(location.get("prixParJour") or 0)
    stored_total = location.get("montantTotal") or location.get("montantAPayer")
    stored_total = float(stored_total) if stored_total is not None else None
    nbr_jours = location.get("nbrJours")
    if not nbr_jours:
        nbr_jours = rental_days(date_debut, date_fin) if date_debut and date_fin else 0
    statut = doc.get("statut", "en_cours")

    client = get_client_by_cin(db, locataire.get("cin", "")) if locataire.get("cin") else None
    car = get_car_by_immat(db, vehicule.get("immatriculation", "")) if vehicule.get("immatriculation") else None
    if car is not None and statut == "en_cours":
        reserve_car(db, car, number)

    second = locataire.get("deuxiemeChauffeur")
    rental = Rental(
        contract_number=number,
        client_id=client.id if client else None,
        car_id=car.id if car else None,
        locataire={
            "nom_prenom": locataire.get("nomPrenom", ""),
            "cin": locataire.get("cin", ""),
            "permis_no": locataire.get("permisNo"),
            "permis_date_delivrance": None,
            "telephone": locataire.get("telephone"),
        },
        conducteur2={"nom_prenom": second, "cin": ""} if second else None,
        vehicule={
            "car_id": car.id if car else None,
            "immatriculation": vehicule.get("immatriculation", ""),
            "marque": vehicule.get("marque", ""),
            "modele": vehicule.get("modele"),
            "modele_annee": vehicule.get("modeleAnnee"),
            "couleur": vehicule.get("couleur"),
            "carburant_type": vehicule.get("carburantType"),
            "transmission": vehicule.get("transmission"),
            "photo_url": vehicule.get("photoURL"),
        },
        date_debut=date_debut,
        date_fin=date_fin,
        prix_par_jour=prix,
        nbr_jours=nbr_jours,
        depot=float(location.get("depot") or 0),
        montant_total=rental_total(date_debut, date_fin, prix, stored_total, nbr_jours),
        montant_paye=float(location.get("montantPaye") or 0),
        statut=statut,
        created_at=created_at,
    )

    departure = legacy_inspection(doc.get("livraison"), "depart", 0, date_debut or created_at)
    if departure is not None:
        rental.inspections.append(departure)
    ret = legacy_inspection(doc.get("reception"), "retour",
                            departure.kilometrage if departure else 0, None)
    if ret is not None:
        rental.inspections.append(ret)

    db.add(rental)
    db.flush()
    record_audit(db, "rental", rental.id, "import", {"contractNumber": number})
    return rental


def import_contracts(db: Session, documents: Iterable[dict]) -> List[Rental]:
    """Importa todos los documentos en una sola transacción."""
    imported = []
    try:
        for doc in documents:
            rental = import_contract(db, doc)
            if rental is not None:
                imported.append(rental)
        db.commit()
    except Exception:
        db.rollback()
        logger.error("Import annulé, aucun contrat enregistré")
        raise
    logger.info("%d contrat(s) importé(s)", len(imported))
    return imported


def main(argv=None):
    parser = argparse.ArgumentParser(description="Importe les contrats à inspections embarquées")
    parser.add_argument("path", help="Fichier JSON (liste de contrats)")
    args = parser.parse_args(argv)

    from database import Base, SessionLocal, engine

    logging.basicConfig(level=logging.INFO)
    Base.metadata.create_all(bind=engine)
    with open(args.path, encoding="utf-8") as fh:
        documents = json.load(fh)
    if isinstance(documents, dict):
        documents = list(documents.values())

    db = SessionLocal()
    try:
        import_contracts(db, documents)
    finally:
        db.close()


if __name__ == "__main__":
    main()
