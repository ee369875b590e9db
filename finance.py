"""Cálculo financiero de los contratos de alquiler.

Funciones puras: el mismo contrato produce siempre el mismo total, ya se
llamen desde la creación, la prolongación, la devolución o una vista de
resumen.
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union

from errors import FieldValidationError, PaymentExceedsRemainingError

DateLike = Union[date, datetime]


@dataclass(frozen=True)
class FinancialSummary:
    total: float
    paye: float
    reste: float


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def calendar_day_diff(start: DateLike, end: DateLike) -> int:
    return (_as_date(end) - _as_date(start)).days


def rental_days(start: DateLike, end: DateLike) -> int:
    """Días facturados: mismo día = 1, diferencia nula o negativa = 1."""
    if _as_date(start) == _as_date(end):
        return 1
    return max(1, calendar_day_diff(start, end))


def _check_price(prix_par_jour) -> float:
    if prix_par_jour is None or isinstance(prix_par_jour, bool):
        raise ValueError("Le prix par jour est requis.")
    price = float(prix_par_jour)
    if price < 0:
        raise ValueError("Le prix par jour ne peut être négatif.")
    return price


def rental_total(
    date_debut: Optional[DateLike],
    date_fin: Optional[DateLike],
    prix_par_jour,
    montant_total: Optional[float] = None,
    nbr_jours: Optional[int] = None,
) -> float:
    price = _check_price(prix_par_jour)
    if date_debut is not None and date_fin is not None and price > 0:
        return round(rental_days(date_debut, date_fin) * price, 2)

    # Registros antiguos o incompletos
    if montant_total is not None and montant_total > 0:
        return round(float(montant_total), 2)
    if nbr_jours and price > 0:
        return round(nbr_jours * price, 2)
    return 0.0


def summarize(total: float, paye: Optional[float]) -> FinancialSummary:
    paye = round(paye or 0.0, 2)
    total = round(total, 2)
    return FinancialSummary(total=total, paye=paye, reste=round(total - paye, 2))


def rental_summary(rental) -> FinancialSummary:
    """Resumen de un contrato persistido (modelo ORM)."""
    total = rental_total(
        rental.date_debut,
        rental.date_fin,
        rental.prix_par_jour or 0,
        montant_total=rental.montant_total,
        nbr_jours=rental.nbr_jours,
    )
    return summarize(total, rental.montant_paye)


def check_payment(total: float, paye: float, amount: float) -> float:
    """Devuelve el nuevo importe pagado o rechaza un pago superior al resto."""
    if amount <= 0:
        raise FieldValidationError("amount", "Le montant doit être un nombre positif.")
    summary = summarize(total, paye)
    if round(amount, 2) > summary.reste:
        raise PaymentExceedsRemainingError(max(summary.reste, 0.0))
    return round(summary.paye + amount, 2)
