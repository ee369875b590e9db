import json
from datetime import datetime

import pytest

import legacy
import lifecycle
from conftest import SIGNED_AT, make_car, make_client, rental_payload
from errors import FieldValidationError, StateConflictError
from models import Rental
from schemas import CheckIn, PaymentCreate

LEGACY_CONTRACT = {
    "contratId": "C-2023-11-004",
    "createdAt": "2023-11-02T09:15:00Z",
    "locataire": {
        "cin": "AB123456",
        "nomPrenom": "Yassine Alaoui",
        "permisNo": "P-778899",
        "telephone": "0612345678",
        "deuxiemeChauffeur": "Karim Idrissi",
    },
    "vehicule": {
        "immatriculation": "12345-A-6",
        "marque": "Dacia",
        "modeleAnnee": 2021,
        "couleur": "Blanc",
        "carburantType": "Diesel",
    },
    "livraison": {
        "dateHeure": {"seconds": 1698916500},
        "kilometrage": 38000,
        "carburantNiveau": 0.75,
        "roueSecours": True,
        "posteRadio": True,
        "lavage": False,
        "dommages": {"porte_avg_1": "scratch", "capot_1": "tache"},
        "dommagesNotes": "Rayure légère",
    },
    "reception": {
        "dateHeure": "2023-11-06T18:00:00",
        "kilometrage": 38900,
        "carburantNiveau": 0.5,
        "dommages": ["parechoc_ar_1"],
    },
    "location": {
        "dateDebut": "2023-11-02T10:00:00",
        "dateFin": "2023-11-06T18:00:00",
        "prixParJour": 250,
        "nbrJours": 4,
        "depot": 2000,
        "montantAPayer": 1000,
    },
    "statut": "terminee",
}


def test_import_normalizes_embedded_inspections(db):
    car = make_car(db)
    customer = make_client(db)

    [rental] = legacy.import_contracts(db, [LEGACY_CONTRACT])
    assert rental.contract_number == "C-2023-11-004"
    assert rental.statut == "terminee"
    assert rental.montant_total == 1000
    assert rental.car_id == car.id
    assert rental.client_id == customer.id
    assert rental.locataire["nom_prenom"] == "Yassine Alaoui"
    assert rental.conducteur2["nom_prenom"] == "Karim Idrissi"

    departure = rental.inspection("depart")
    assert departure.kilometrage == 38000
    assert departure.roue_secours is True
    assert [(d.part_name, d.damage_type) for d in departure.damages] == [("porte_avg_1", "rayure")]
    assert "capot_1" in departure.notes
    assert "Rayure légère" in departure.notes

    reception = rental.inspection("retour")
    assert reception.timestamp == datetime(2023, 11, 6, 18, 0)
    assert reception.kilometrage == 38900
    assert reception.damages == []
    assert "parechoc_ar_1" in reception.notes


def test_active_contract_without_return(db):
    doc = dict(LEGACY_CONTRACT, statut="en_cours", reception={})
    [rental] = legacy.import_contracts(db, [doc])
    assert rental.inspection("retour") is None
    assert rental.reception_inspection_id is None
    assert rental.car_id is None


def test_import_is_idempotent(db):
    legacy.import_contracts(db, [LEGACY_CONTRACT])
    assert legacy.import_contracts(db, [LEGACY_CONTRACT]) == []
    assert db.query(Rental).count() == 1


def test_contract_without_number_gets_one(db):
    doc = {k: v for k, v in LEGACY_CONTRACT.items() if k != "contratId"}
    [rental] = legacy.import_contracts(db, [doc])
    assert rental.contract_number == "C-2023-11-001"


def test_parse_datetime_formats():
    assert legacy.parse_datetime("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, 0)
    assert legacy.parse_datetime({"_seconds": 0}) == datetime.fromtimestamp(0)
    assert legacy.parse_datetime("") is None


def test_command_line_entry(tmp_path, monkeypatch):
    path = tmp_path / "contracts.json"
    path.write_text(json.dumps([LEGACY_CONTRACT]), encoding="utf-8")
    imported = []
    monkeypatch.setattr(legacy, "import_contracts", lambda session, docs: imported.extend(docs))
    legacy.main([str(path)])
    assert imported[0]["contratId"] == "C-2023-11-004"


def test_contract_without_dates_keeps_stored_total(db):
    doc = dict(LEGACY_CONTRACT, location={"prixParJour": 250, "nbrJours": 8, "montantTotal": 2000})
    [rental] = legacy.import_contracts(db, [doc])
    assert rental.date_debut is None
    assert rental.nbr_jours == 8
    assert rental.resume.total == 2000
    assert rental.inspection("depart").timestamp == datetime.fromtimestamp(1698916500)


def test_missing_price_keeps_amount_due(db):
    location = dict(LEGACY_CONTRACT["location"], prixParJour=None)
    [rental] = legacy.import_contracts(db, [dict(LEGACY_CONTRACT, location=location, statut="en_cours")])
    assert rental.resume.total == 1000
    lifecycle.record_payment(db, PaymentCreate(rental_id=rental.id, amount=400))
    assert rental.resume.reste == 600


def test_active_import_marks_car_rented(db):
    car = make_car(db)
    customer = make_client(db)
    legacy.import_contracts(db, [dict(LEGACY_CONTRACT, statut="en_cours", reception={})])
    assert car.disponibilite == "louee"

    data = rental_payload(customer.id, car.id, datetime(2024, 5, 1, 10), datetime(2024, 5, 4, 10))
    with pytest.raises(StateConflictError):
        lifecycle.create_contract(db, data, now=SIGNED_AT)


def test_two_active_imports_on_one_car_are_rejected(db):
    car = make_car(db)
    first = dict(LEGACY_CONTRACT, statut="en_cours", reception={})
    second = dict(first, contratId="C-2023-11-009")
    with pytest.raises(StateConflictError):
        legacy.import_contracts(db, [first, second])
    assert db.query(Rental).count() == 0
    assert car.disponibilite == "disponible"


def test_check_in_of_import_without_departure(db):
    car = make_car(db)
    doc = dict(LEGACY_CONTRACT, statut="en_cours", livraison={}, reception={},
               location={"prixParJour": 250, "nbrJours": 8, "montantTotal": 2000})
    [rental] = legacy.import_contracts(db, [doc])
    assert rental.inspection("depart") is None

    with pytest.raises(FieldValidationError):
        lifecycle.check_in(db, rental.id, CheckIn(carburant_niveau=0.5, date_retour=datetime(2024, 5, 5, 10),
                                                  kilometrage_retour=41000))
    returned = lifecycle.check_in(db, rental.id, CheckIn(carburant_niveau=0.5,
                                                         date_retour=datetime(2024, 5, 5, 10),
                                                         kilometrage_retour=42800))
    assert returned.statut == "terminee"
    assert returned.resume.total == 2000
    assert car.disponibilite == "disponible"
    assert car.kilometrage == 42800
