from datetime import date, datetime
from typing import Annotated, List, Literal, Optional

from pydantic import (AfterValidator, BaseModel, ConfigDict, EmailStr, Field,
                      field_validator, model_validator)
from pydantic.alias_generators import to_camel

Disponibilite = Literal["disponible", "louee", "maintenance"]
Etat = Literal["new", "good", "fair", "poor"]
CarburantType = Literal["Diesel", "Essence", "Electrique", "Hybrid"]
Transmission = Literal["Manuelle", "Automatique"]
Statut = Literal["en_cours", "terminee"]
InspectionType = Literal["depart", "retour"]
DamageType = Literal["rayure", "bosse", "casse", "a_remplacer"]
PaymentMethod = Literal["Especes", "Carte bancaire", "Virement", "Avance"]
PaymentStatus = Literal["complete", "en_attente"]


def _strip_tz(value: datetime) -> datetime:
    # Se conserva la hora local de la agencia; SQLite no guarda la zona horaria
    return value.replace(tzinfo=None) if value.tzinfo else value

LocalDatetime = Annotated[datetime, AfterValidator(_strip_tz)]


class CamelModel(BaseModel):
    """Nombres de campo en JSON en camelCase (``prixParJour``, ``contractNumber``...)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Usuarios
class UserBase(CamelModel):
    email: EmailStr
    display_name: Optional[str] = None

class UserCreate(UserBase):
    password: str = Field(..., min_length=6)

class User(UserBase):
    id: int
    role: str
    providers: List[str] = []
    is_active: bool
    can_change_password: bool

class PasswordChange(CamelModel):
    current_password: str
    new_password: str = Field(..., min_length=6)

class Token(BaseModel):
    access_token: str
    token_type: str

class TokenData(BaseModel):
    email: Optional[str] = None


# Vehículos
class MaintenanceSchedule(CamelModel):
    prochain_vidange_km: Optional[int] = None
    prochain_filtre_gasoil_km: Optional[int] = None
    prochaines_plaquettes_frein_km: Optional[int] = None
    prochaine_courroie_distribution_km: Optional[int] = None
    prochaine_revision_date: Optional[date] = None
    prochain_liquide_frein_date: Optional[date] = None
    prochain_liquide_refroidissement_date: Optional[date] = None

class MaintenanceEventBase(CamelModel):
    date: LocalDatetime
    kilometrage: int = Field(..., ge=0)
    type_intervention: str = Field(..., min_length=1)
    description: str = Field(..., min_length=3)
    cout: Optional[float] = Field(None, ge=0)

class MaintenanceEvent(MaintenanceEventBase):
    id: int

class CurrentMaintenance(CamelModel):
    start_date: Optional[datetime] = None
    reason: Optional[str] = None
    notes: str = ""

class CarBase(CamelModel):
    marque: str = Field(..., min_length=1)
    modele: str = Field(..., min_length=1)
    immat: str = Field(..., min_length=5)
    immat_ww: Optional[str] = Field(None, alias="immatWW")
    num_chassis: str
    date_mise_en_circulation: Optional[date] = None
    modele_annee: Optional[int] = Field(None, ge=1950, le=2100)
    couleur: str = Field(..., min_length=3)
    nbr_places: int = Field(5, ge=2, le=9)
    puissance: int = Field(7, ge=4)
    carburant_type: CarburantType = "Essence"
    transmission: Transmission = "Manuelle"
    etat: Etat = "new"
    prix_par_jour: float = Field(..., gt=0)
    kilometrage: int = Field(0, ge=0)
    photo_url: Optional[str] = Field(None, alias="photoURL")
    date_expiration_assurance: Optional[date] = None
    date_prochaine_visite_technique: Optional[date] = None
    annee_vignette: Optional[int] = None
    maintenance_schedule: Optional[MaintenanceSchedule] = None

    @field_validator("num_chassis")
    @classmethod
    def chassis_length(cls, value: str) -> str:
        if len(value) != 17:
            raise ValueError("Le numéro de châssis doit comporter 17 caractères.")
        return value.upper()

    @field_validator("photo_url")
    @classmethod
    def photo_url_scheme(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith(("http://", "https://", "data:image/")):
            raise ValueError("Veuillez entrer une URL valide.")
        return value or None

class CarCreate(CarBase):
    pass

class CarUpdate(CarBase):
    pass

class Car(CarBase):
    id: int
    disponibilite: Disponibilite
    maintenance_schedule: MaintenanceSchedule
    maintenance_history: List[MaintenanceEvent] = []
    current_maintenance: Optional[CurrentMaintenance] = None
    created_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

class MaintenanceStart(CamelModel):
    reason: str = Field(..., min_length=3)
    notes: Optional[str] = None

class MaintenanceFinish(CamelModel):
    add_to_history: bool = True
    maintenance_event: Optional[MaintenanceEventBase] = None

    @model_validator(mode="after")
    def event_required_for_history(self):
        if self.add_to_history:
            event = self.maintenance_event
            if event is None or event.kilometrage <= 0:
                raise ValueError(
                    "Le kilométrage et la description sont requis pour ajouter à l'historique."
                )
        return self


# Clientes
class ClientBase(CamelModel):
    nom: str = Field(..., min_length=2)
    cin: str = Field(..., min_length=5)
    permis_no: Optional[str] = None
    permis_date_delivrance: Optional[date] = None
    telephone: str = Field(..., min_length=10)
    adresse: str = Field(..., min_length=10)
    photo_cin: Optional[str] = Field(None, alias="photoCIN")
    photo_permis: Optional[str] = None

class Client(ClientBase):
    id: int
    created_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None


# Contratos
class DriverSnapshot(CamelModel):
    nom_prenom: str
    cin: str
    permis_no: Optional[str] = None
    permis_date_delivrance: Optional[date] = None
    telephone: Optional[str] = None

class VehicleSnapshot(CamelModel):
    car_id: Optional[int] = None
    immatriculation: str
    marque: str
    modele: Optional[str] = None
    modele_annee: Optional[int] = None
    couleur: Optional[str] = None
    carburant_type: Optional[str] = None
    transmission: Optional[str] = None
    photo_url: Optional[str] = Field(None, alias="photoURL")

class DamageBase(CamelModel):
    part_name: str = Field(..., min_length=1)
    damage_type: DamageType
    x: Optional[float] = None
    y: Optional[float] = None

class Damage(DamageBase):
    id: int

class InspectionChecklist(CamelModel):
    carburant_niveau: float = Field(..., ge=0, le=1)
    roue_secours: bool = False
    cric: bool = False
    gilet_triangle: bool = False
    poste_radio: bool = False
    double_cles: bool = False
    lavage: bool = False
    notes: Optional[str] = None
    photos: List[str] = []
    damages: List[DamageBase] = []

class DepartureInspection(InspectionChecklist):
    # Por defecto, el kilometraje actual del vehículo
    kilometrage: Optional[int] = Field(None, ge=0)

class Inspection(CamelModel):
    id: int
    rental_id: int
    type: InspectionType
    timestamp: datetime
    kilometrage: int
    carburant_niveau: float
    roue_secours: bool = False
    cric: bool = False
    gilet_triangle: bool = False
    poste_radio: bool = False
    double_cles: bool = False
    lavage: bool = False
    notes: Optional[str] = None
    photos: List[str] = []
    damages: List[Damage] = []

class RentalCreate(CamelModel):
    client_id: int
    car_id: int
    conducteur2_client_id: Optional[int] = None
    conducteur2: Optional[DriverSnapshot] = None
    date_debut: LocalDatetime
    date_fin: LocalDatetime
    depot: float = Field(0, ge=0)
    lieu_depart: Optional[str] = None
    lieu_retour: Optional[str] = None
    livraison: DepartureInspection

class RentalExtension(CamelModel):
    date_fin: LocalDatetime
    lieu_retour: Optional[str] = None

class CheckIn(InspectionChecklist):
    date_retour: LocalDatetime
    kilometrage_retour: int = Field(..., ge=0)

class LocationBlock(CamelModel):
    date_debut: Optional[datetime] = None
    date_fin: Optional[datetime] = None
    prix_par_jour: float
    nbr_jours: int
    depot: Optional[float] = 0
    montant_total: float
    montant_paye: float = 0
    lieu_depart: Optional[str] = None
    lieu_retour: Optional[str] = None

class FinancialSummary(CamelModel):
    total: float
    paye: float
    reste: float

class Rental(CamelModel):
    id: int
    contract_number: str
    locataire: DriverSnapshot
    conducteur2: Optional[DriverSnapshot] = None
    vehicule: VehicleSnapshot
    location: LocationBlock
    statut: Statut
    livraison_inspection_id: Optional[int] = None
    reception_inspection_id: Optional[int] = None
    resume: FinancialSummary
    created_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

class RentalDetail(Rental):
    inspections: List[Inspection] = []


# Pagos
class PaymentBase(CamelModel):
    amount: float = Field(..., gt=0)
    payment_date: LocalDatetime = Field(default_factory=datetime.now)
    payment_method: PaymentMethod = "Especes"
    status: PaymentStatus = "complete"

class PaymentCreate(PaymentBase):
    rental_id: int

class PaymentUpdate(PaymentBase):
    pass

class Payment(PaymentBase):
    id: int
    rental_id: int
    client_name: Optional[str] = None
    contract_number: Optional[str] = None
    created_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None


# Ajustes de la agencia
class CompanySettingsBase(CamelModel):
    company_name: str = Field(..., min_length=2)
    logo_url: Optional[str] = ""
    adresse: Optional[str] = ""
    telephone: Optional[str] = ""

class CompanySettings(CompanySettingsBase):
    pass


# Alertas y tablero
class Alert(CamelModel):
    car_id: int
    immat: str
    marque: str
    modele: str
    category: Literal["document", "maintenance"]
    type: str
    status: Literal["expired", "expiring-soon", "due", "soon"]
    due_km: Optional[int] = None
    due_date: Optional[date] = None
    remaining: float
    unit: Literal["km", "jours"]

class DashboardStats(CamelModel):
    total_cars: int
    available_cars: int
    active_rentals: int
    monthly_revenue: float
    outstanding_balance: float
    alerts: List[Alert] = []

class AuditEntry(CamelModel):
    id: int
    entity: str
    entity_id: Optional[int] = None
    action: str
    payload: Optional[dict] = None
    user_email: Optional[str] = None
    created_at: datetime
