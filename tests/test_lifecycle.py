from datetime import datetime

import pytest

import lifecycle
from conftest import SIGNED_AT, make_car, make_client, rental_payload
from errors import FieldValidationError, RecordNotFoundError, StateConflictError
from models import AuditLog, Inspection
from schemas import CheckIn, DamageBase, DepartureInspection, DriverSnapshot, RentalExtension


def check_in_data(**overrides):
    data = dict(
        carburant_niveau=0.5,
        date_retour=datetime(2024, 5, 5, 10),
        kilometrage_retour=42500,
    )
    data.update(overrides)
    return CheckIn(**data)


def test_create_contract(db, car, rental):
    assert rental.contract_number == "C-2024-05-001"
    assert rental.statut == "en_cours"
    assert rental.nbr_jours == 3
    assert rental.montant_total == 750
    assert rental.montant_paye == 0
    assert rental.locataire["nom_prenom"] == "Yassine Alaoui"
    assert rental.vehicule["immatriculation"] == car.immat
    assert car.disponibilite == "louee"

    departure = rental.inspection("depart")
    assert departure.kilometrage == 42000
    assert departure.timestamp == SIGNED_AT
    assert rental.livraison_inspection_id == departure.id
    assert rental.reception_inspection_id is None
    assert db.query(AuditLog).filter(AuditLog.entity == "rental", AuditLog.action == "create").count() == 1


def test_departure_damages_are_normalized(db, car, customer):
    livraison = DepartureInspection(
        carburant_niveau=0.75,
        kilometrage=42010,
        damages=[DamageBase(part_name="porte_avg_1", damage_type="rayure", x=12, y=40)],
    )
    data = rental_payload(customer.id, car.id, datetime(2024, 5, 1, 10), datetime(2024, 5, 2, 10),
                          livraison=livraison)
    rental = lifecycle.create_contract(db, data, now=SIGNED_AT)
    departure = rental.inspection("depart")
    assert departure.kilometrage == 42010
    assert [(d.part_name, d.damage_type) for d in departure.damages] == [("porte_avg_1", "rayure")]


def test_contract_numbers_are_sequential_within_a_month(db, rental, customer):
    second_car = make_car(db, immat="67890-B-6", num_chassis="VF1ABCDEF87654321")
    data = rental_payload(customer.id, second_car.id, datetime(2024, 5, 20, 10), datetime(2024, 5, 22, 10))
    second = lifecycle.create_contract(db, data, now=datetime(2024, 5, 20, 9))
    assert second.contract_number == "C-2024-05-002"


def test_contract_numbers_restart_each_month(db, rental, customer):
    second_car = make_car(db, immat="67890-B-6", num_chassis="VF1ABCDEF87654321")
    data = rental_payload(customer.id, second_car.id, datetime(2024, 6, 1, 10), datetime(2024, 6, 2, 10))
    second = lifecycle.create_contract(db, data, now=datetime(2024, 6, 1, 9))
    assert second.contract_number == "C-2024-06-001"


def test_archived_contracts_keep_their_number(db, rental, car, customer):
    lifecycle.archive_rental(db, rental.id)
    data = rental_payload(customer.id, car.id, datetime(2024, 5, 2, 10), datetime(2024, 5, 3, 10))
    second = lifecycle.create_contract(db, data, now=datetime(2024, 5, 2, 9))
    assert second.contract_number == "C-2024-05-002"


def test_car_must_be_available(db, rental, car, customer):
    data = rental_payload(customer.id, car.id, datetime(2024, 5, 1, 10), datetime(2024, 5, 2, 10))
    with pytest.raises(StateConflictError):
        lifecycle.create_contract(db, data, now=SIGNED_AT)


def test_end_before_start_is_rejected(db, car, customer):
    data = rental_payload(customer.id, car.id, datetime(2024, 5, 4, 10), datetime(2024, 5, 1, 10))
    with pytest.raises(FieldValidationError) as info:
        lifecycle.create_contract(db, data, now=SIGNED_AT)
    assert info.value.field == "dateFin"
    assert car.disponibilite == "disponible"


def test_start_in_the_past_is_rejected(db, car, customer):
    data = rental_payload(customer.id, car.id, datetime(2024, 4, 30, 10), datetime(2024, 5, 2, 10))
    with pytest.raises(FieldValidationError) as info:
        lifecycle.create_contract(db, data, now=SIGNED_AT)
    assert info.value.field == "dateDebut"


def test_unknown_client_is_rejected(db, car):
    data = rental_payload(999, car.id, datetime(2024, 5, 1, 10), datetime(2024, 5, 2, 10))
    with pytest.raises(FieldValidationError) as info:
        lifecycle.create_contract(db, data, now=SIGNED_AT)
    assert info.value.field == "clientId"


def test_second_driver_from_client_record(db, car, customer):
    other = make_client(db, nom="Salma Bennani", cin="CD654321")
    data = rental_payload(customer.id, car.id, datetime(2024, 5, 1, 10), datetime(2024, 5, 2, 10),
                          conducteur2_client_id=other.id)
    rental = lifecycle.create_contract(db, data, now=SIGNED_AT)
    assert rental.conducteur2["cin"] == "CD654321"


def test_inline_second_driver(db, car, customer):
    data = rental_payload(customer.id, car.id, datetime(2024, 5, 1, 10), datetime(2024, 5, 2, 10),
                          conducteur2=DriverSnapshot(nom_prenom="Karim Idrissi", cin="EE112233"))
    rental = lifecycle.create_contract(db, data, now=SIGNED_AT)
    assert rental.conducteur2["nom_prenom"] == "Karim Idrissi"


def test_extend_contract(db, rental):
    extended = lifecycle.extend_contract(db, rental.id, RentalExtension(date_fin=datetime(2024, 5, 6, 10),
                                                                      lieu_retour="Aéroport Rabat-Salé"))
    assert extended.nbr_jours == 5
    assert extended.montant_total == 1250
    assert extended.lieu_retour == "Aéroport Rabat-Salé"


def test_extension_before_start_is_rejected(db, rental):
    with pytest.raises(FieldValidationError):
        lifecycle.extend_contract(db, rental.id, RentalExtension(date_fin=datetime(2024, 4, 30, 10)))


def test_extension_below_paid_amount_is_rejected(db, rental):
    rental.montant_paye = 750
    db.commit()
    with pytest.raises(FieldValidationError):
        lifecycle.extend_contract(db, rental.id, RentalExtension(date_fin=datetime(2024, 5, 2, 10)))
    assert rental.montant_total == 750


def test_check_in(db, rental, car):
    returned = lifecycle.check_in(db, rental.id, check_in_data(
        damages=[DamageBase(part_name="parechoc_av_1", damage_type="bosse")],
    ))
    assert returned.statut == "terminee"
    assert returned.date_fin == datetime(2024, 5, 5, 10)
    assert returned.nbr_jours == 4
    assert returned.montant_total == 1000
    assert car.disponibilite == "disponible"
    assert car.kilometrage == 42500

    reception = returned.inspection("retour")
    assert reception.timestamp == datetime(2024, 5, 5, 10)
    assert reception.damages[0].damage_type == "bosse"
    assert returned.reception_inspection_id == reception.id


def test_check_in_with_lower_odometer_writes_nothing(db, rental, car):
    with pytest.raises(FieldValidationError) as info:
        lifecycle.check_in(db, rental.id, check_in_data(kilometrage_retour=41000))
    assert info.value.field == "kilometrageRetour"
    assert car.disponibilite == "louee"
    assert rental.statut == "en_cours"
    assert db.query(Inspection).filter(Inspection.type == "retour").count() == 0


def test_check_in_before_start_is_rejected(db, rental):
    with pytest.raises(FieldValidationError) as info:
        lifecycle.check_in(db, rental.id, check_in_data(date_retour=datetime(2024, 4, 30, 10)))
    assert info.value.field == "dateRetour"


def test_check_in_twice_is_rejected(db, rental):
    lifecycle.check_in(db, rental.id, check_in_data())
    with pytest.raises(StateConflictError):
        lifecycle.check_in(db, rental.id, check_in_data())


def test_check_in_unknown_contract(db):
    with pytest.raises(RecordNotFoundError):
        lifecycle.check_in(db, 999, check_in_data())


def test_extension_after_return_is_rejected(db, rental):
    lifecycle.check_in(db, rental.id, check_in_data())
    with pytest.raises(StateConflictError):
        lifecycle.extend_contract(db, rental.id, RentalExtension(date_fin=datetime(2024, 5, 8, 10)))


def test_archive_active_contract_frees_the_car(db, rental, car):
    lifecycle.archive_rental(db, rental.id)
    assert rental.archived_at is not None
    assert car.disponibilite == "disponible"
    assert lifecycle.get_rentals(db) == []
    assert lifecycle.get_rentals(db, archived=True) == [rental]


def test_purge_requires_archived_contract(db, rental):
    with pytest.raises(StateConflictError):
        lifecycle.purge_archived_rental(db, rental.id)
    lifecycle.archive_rental(db, rental.id)
    lifecycle.purge_archived_rental(db, rental.id)
    assert lifecycle.get_rental(db, rental.id) is None
    assert db.query(Inspection).count() == 0


def test_check_in_without_departure_uses_car_odometer(db, rental, car):
    db.delete(rental.inspection("depart"))
    db.commit()
    db.refresh(rental)
    with pytest.raises(FieldValidationError) as info:
        lifecycle.check_in(db, rental.id, check_in_data(kilometrage_retour=41000))
    assert "42000" in info.value.message
    assert rental.statut == "en_cours"


def test_taken_contract_number_is_retried(db, rental, customer, monkeypatch):
    numbers = iter([rental.contract_number])
    original = lifecycle.next_contract_number
    monkeypatch.setattr(lifecycle, "next_contract_number",
                        lambda session, when: next(numbers, None) or original(session, when))
    second_car = make_car(db, immat="67890-B-6", num_chassis="VF1ABCDEF87654321")
    data = rental_payload(customer.id, second_car.id, datetime(2024, 5, 20, 10), datetime(2024, 5, 22, 10))
    second = lifecycle.create_contract(db, data, now=datetime(2024, 5, 20, 9))
    assert second.contract_number == "C-2024-05-002"
    assert second_car.disponibilite == "louee"
