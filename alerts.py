"""Alertas de mantenimiento y de documentos del parque.

Derivación pura sobre los vehículos: nada se guarda, se recalcula en cada
petición.
"""
from collections import namedtuple
from datetime import date, datetime
from typing import Iterable, List, Optional

DOCUMENT_WARNING_DAYS = 7

# (tipo, atributo del vehículo, ventana de aviso)
KmRule = namedtuple("KmRule", "type field lead_km")
DateRule = namedtuple("DateRule", "type field lead_days")

KM_RULES = (
    KmRule("vidange", "prochain_vidange_km", 1000),
    KmRule("filtre_gasoil", "prochain_filtre_gasoil_km", 1500),
    KmRule("plaquettes_frein", "prochaines_plaquettes_frein_km", 1500),
    KmRule("courroie_distribution", "prochaine_courroie_distribution_km", 2000),
)

DATE_RULES = (
    DateRule("revision", "prochaine_revision_date", 15),
    DateRule("liquide_frein", "prochain_liquide_frein_date", 30),
    DateRule("liquide_refroidissement", "prochain_liquide_refroidissement_date", 30),
)

DOCUMENT_RULES = (
    ("assurance", "date_expiration_assurance"),
    ("visite_technique", "date_prochaine_visite_technique"),
)

# Intervalos de servicio (km) y palabras clave del tipo de intervención
SERVICE_INTERVALS = (
    ("prochain_vidange_km", ("vidange",), 10000),
    ("prochain_filtre_gasoil_km", ("filtre à gazole", "filtre carburant", "filtre gasoil"), 20000),
    ("prochaines_plaquettes_frein_km", ("plaquettes de frein",), 20000),
    ("prochaine_courroie_distribution_km", ("distribution",), 60000),
)


def _as_date(value) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    return value


def _alert(car, category, type_, status, remaining, lead, unit, due_km=None, due_date=None):
    return {
        "car_id": car.id,
        "immat": car.immat,
        "marque": car.marque,
        "modele": car.modele,
        "category": category,
        "type": type_,
        "status": status,
        "due_km": due_km,
        "due_date": due_date,
        "remaining": remaining,
        "unit": unit,
        # Fracción de la ventana de aviso que queda; sirve para ordenar
        "_urgency": remaining / lead if lead else remaining,
    }


def document_alerts(car, today: date) -> List[dict]:
    alerts = []
    for type_, field in DOCUMENT_RULES:
        expiry = _as_date(getattr(car, field, None))
        if expiry is None:
            continue
        days_left = (expiry - today).days
        if expiry < today:
            status = "expired"
        elif days_left <= DOCUMENT_WARNING_DAYS:
            status = "expiring-soon"
        else:
            continue
        alerts.append(_alert(car, "document", type_, status, days_left,
                             DOCUMENT_WARNING_DAYS, "jours", due_date=expiry))
    return alerts


def maintenance_alerts(car, today: date) -> List[dict]:
    alerts = []
    odometer = car.kilometrage or 0
    for rule in KM_RULES:
        threshold = getattr(car, rule.field, None)
        if threshold is None:
            continue
        remaining = threshold - odometer
        if remaining <= 0:
            status = "due"
        elif remaining <= rule.lead_km:
            status = "soon"
        else:
            continue
        alerts.append(_alert(car, "maintenance", rule.type, status, remaining,
                             rule.lead_km, "km", due_km=threshold))

    for rule in DATE_RULES:
        threshold = _as_date(getattr(car, rule.field, None))
        if threshold is None:
            continue
        remaining = (threshold - today).days
        if remaining <= 0:
            status = "due"
        elif remaining <= rule.lead_days:
            status = "soon"
        else:
            continue
        alerts.append(_alert(car, "maintenance", rule.type, status, remaining,
                             rule.lead_days, "jours", due_date=threshold))
    return alerts


def fleet_alerts(cars: Iterable, today: Optional[date] = None) -> List[dict]:
    """Alertas de todo el parque, las más urgentes primero."""
    today = today or date.today()
    alerts = []
    for car in cars:
        if getattr(car, "archived_at", None) is not None:
            continue
        alerts.extend(document_alerts(car, today))
        alerts.extend(maintenance_alerts(car, today))

    overdue = ("expired", "due")
    alerts.sort(key=lambda a: (a["status"] not in overdue, a["_urgency"], a["car_id"]))
    for alert in alerts:
        del alert["_urgency"]
    return alerts


def next_milestone(kilometrage: int, interval: int) -> Optional[int]:
    """Siguiente múltiplo del intervalo estrictamente superior al kilometraje."""
    if interval <= 0 or kilometrage is None or kilometrage <= 0:
        return None
    nxt = -(-kilometrage // interval) * interval
    return nxt if nxt > kilometrage else nxt + interval


def initial_schedule(kilometrage: int) -> dict:
    return {field: next_milestone(kilometrage, interval) for field, _, interval in SERVICE_INTERVALS}


def schedule_from_history(history, kilometrage: int) -> dict:
    """Recalcula los umbrales km a partir de la última intervención de cada tipo."""
    schedule = {}
    for field, keywords, interval in SERVICE_INTERVALS:
        matching = [
            event.kilometrage for event in history
            if event.kilometrage and event.kilometrage > 0
            and any(k in (event.type_intervention or "").lower() for k in keywords)
        ]
        if matching:
            schedule[field] = max(matching) + interval
        else:
            schedule[field] = next_milestone(kilometrage, interval)
    return schedule
