from datetime import datetime

from sqlalchemy import (JSON, Boolean, Column, Date, DateTime, Float, ForeignKey,
                        Integer, String, Text)
from sqlalchemy.orm import relationship

from database import Base
from finance import rental_summary


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(100), unique=True, index=True, nullable=False)
    display_name = Column(String(100))
    hashed_password = Column(String(200), nullable=True)
    providers = Column(JSON, default=list)
    role = Column(String(20), default="agent")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)

    @property
    def can_change_password(self) -> bool:
        return "password" in (self.providers or [])


class Car(Base):
    __tablename__ = "cars"

    id = Column(Integer, primary_key=True, index=True)
    marque = Column(String(50), nullable=False)
    modele = Column(String(50), nullable=False)
    immat = Column(String(20), unique=True, index=True, nullable=False)
    immat_ww = Column(String(20))
    num_chassis = Column(String(17), unique=True)
    date_mise_en_circulation = Column(Date)
    modele_annee = Column(Integer)
    couleur = Column(String(30))
    nbr_places = Column(Integer, default=5)
    puissance = Column(Integer)
    carburant_type = Column(String(20), default="Essence")
    transmission = Column(String(20), default="Manuelle")
    etat = Column(String(10), default="new")
    disponibilite = Column(String(20), default="disponible", index=True)
    prix_par_jour = Column(Float, nullable=False)
    kilometrage = Column(Integer, default=0)
    photo_url = Column(String(500))
    date_expiration_assurance = Column(Date)
    date_prochaine_visite_technique = Column(Date)
    annee_vignette = Column(Integer)

    # Plan de mantenimiento
    prochain_vidange_km = Column(Integer)
    prochain_filtre_gasoil_km = Column(Integer)
    prochaines_plaquettes_frein_km = Column(Integer)
    prochaine_courroie_distribution_km = Column(Integer)
    prochaine_revision_date = Column(Date)
    prochain_liquide_frein_date = Column(Date)
    prochain_liquide_refroidissement_date = Column(Date)

    # Mantenimiento en curso (solo cuando disponibilite == "maintenance")
    maintenance_start_date = Column(DateTime)
    maintenance_reason = Column(String(200))
    maintenance_notes = Column(Text)

    created_at = Column(DateTime, default=datetime.now)
    archived_at = Column(DateTime, nullable=True, index=True)

    maintenance_history = relationship(
        "MaintenanceEvent",
        back_populates="car",
        order_by="MaintenanceEvent.date",
        cascade="all, delete-orphan",
    )
    rentals = relationship("Rental", back_populates="car")

    SCHEDULE_FIELDS = (
        "prochain_vidange_km",
        "prochain_filtre_gasoil_km",
        "prochaines_plaquettes_frein_km",
        "prochaine_courroie_distribution_km",
        "prochaine_revision_date",
        "prochain_liquide_frein_date",
        "prochain_liquide_refroidissement_date",
    )

    @property
    def maintenance_schedule(self):
        return {name: getattr(self, name) for name in self.SCHEDULE_FIELDS}

    @property
    def current_maintenance(self):
        if self.disponibilite != "maintenance":
            return None
        return {
            "start_date": self.maintenance_start_date,
            "reason": self.maintenance_reason,
            "notes": self.maintenance_notes or "",
        }

    def __repr__(self) -> str:
        return f"<Car {self.immat}>"


class MaintenanceEvent(Base):
    __tablename__ = "maintenance_events"

    id = Column(Integer, primary_key=True, index=True)
    car_id = Column(Integer, ForeignKey("cars.id"), nullable=False, index=True)
    date = Column(DateTime, nullable=False)
    kilometrage = Column(Integer, nullable=False)
    type_intervention = Column(String(100), nullable=False)
    description = Column(Text)
    cout = Column(Float, nullable=True)

    car = relationship("Car", back_populates="maintenance_history")


class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    nom = Column(String(100), nullable=False)
    cin = Column(String(30), unique=True, index=True, nullable=False)
    permis_no = Column(String(50))
    permis_date_delivrance = Column(Date)
    telephone = Column(String(30))
    adresse = Column(String(300))
    photo_cin = Column(String(500))
    photo_permis = Column(String(500))
    created_at = Column(DateTime, default=datetime.now)
    archived_at = Column(DateTime, nullable=True, index=True)

    rentals = relationship("Rental", back_populates="client")


class Rental(Base):
    __tablename__ = "rentals"

    id = Column(Integer, primary_key=True, index=True)
    contract_number = Column(String(20), unique=True, index=True, nullable=False)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    car_id = Column(Integer, ForeignKey("cars.id"), nullable=True)

    # Copias desnormalizadas tomadas al firmar el contrato
    locataire = Column(JSON, nullable=False)
    conducteur2 = Column(JSON, nullable=True)
    vehicule = Column(JSON, nullable=False)

    # Nulas solo en contratos importados sin fechas
    date_debut = Column(DateTime, nullable=True)
    date_fin = Column(DateTime, nullable=True)
    prix_par_jour = Column(Float, nullable=False)
    nbr_jours = Column(Integer, nullable=False)
    depot = Column(Float, default=0.0)
    montant_total = Column(Float, nullable=False)
    montant_paye = Column(Float, default=0.0, nullable=False)
    lieu_depart = Column(String(100))
    lieu_retour = Column(String(100))

    statut = Column(String(20), default="en_cours", index=True)
    created_at = Column(DateTime, default=datetime.now, index=True)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)
    archived_at = Column(DateTime, nullable=True, index=True)

    car = relationship("Car", back_populates="rentals")
    client = relationship("Client", back_populates="rentals")
    inspections = relationship(
        "Inspection",
        back_populates="rental",
        order_by="Inspection.timestamp",
        cascade="all, delete-orphan",
    )
    payments = relationship("Payment", back_populates="rental", cascade="all, delete-orphan")

    @property
    def location(self):
        return {
            "date_debut": self.date_debut,
            "date_fin": self.date_fin,
            "prix_par_jour": self.prix_par_jour,
            "nbr_jours": self.nbr_jours,
            "depot": self.depot,
            "montant_total": self.montant_total,
            "montant_paye": self.montant_paye,
            "lieu_depart": self.lieu_depart,
            "lieu_retour": self.lieu_retour,
        }

    @property
    def resume(self):
        return rental_summary(self)

    def inspection(self, type_: str):
        return next((i for i in self.inspections if i.type == type_), None)

    @property
    def livraison_inspection_id(self):
        inspection = self.inspection("depart")
        return inspection.id if inspection else None

    @property
    def reception_inspection_id(self):
        inspection = self.inspection("retour")
        return inspection.id if inspection else None

    def __repr__(self) -> str:
        return f"<Rental {self.contract_number} {self.statut}>"


class Inspection(Base):
    __tablename__ = "inspections"

    id = Column(Integer, primary_key=True, index=True)
    rental_id = Column(Integer, ForeignKey("rentals.id"), nullable=False, index=True)
    type = Column(String(10), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    kilometrage = Column(Integer, nullable=False)
    carburant_niveau = Column(Float, nullable=False)
    roue_secours = Column(Boolean, default=False)
    cric = Column(Boolean, default=False)
    gilet_triangle = Column(Boolean, default=False)
    poste_radio = Column(Boolean, default=False)
    double_cles = Column(Boolean, default=False)
    lavage = Column(Boolean, default=False)
    notes = Column(Text)
    photos = Column(JSON, default=list)

    rental = relationship("Rental", back_populates="inspections")
    damages = relationship("Damage", back_populates="inspection", cascade="all, delete-orphan")


class Damage(Base):
    __tablename__ = "damages"

    id = Column(Integer, primary_key=True, index=True)
    inspection_id = Column(Integer, ForeignKey("inspections.id"), nullable=False, index=True)
    part_name = Column(String(50), nullable=False)
    damage_type = Column(String(20), nullable=False)
    x = Column(Float)
    y = Column(Float)

    inspection = relationship("Inspection", back_populates="damages")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    rental_id = Column(Integer, ForeignKey("rentals.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    payment_date = Column(DateTime, nullable=False)
    payment_method = Column(String(20), nullable=False)
    status = Column(String(20), default="complete")
    client_name = Column(String(100))
    contract_number = Column(String(20), index=True)
    created_at = Column(DateTime, default=datetime.now)
    archived_at = Column(DateTime, nullable=True, index=True)

    rental = relationship("Rental", back_populates="payments")


class CompanySettings(Base):
    __tablename__ = "company_settings"

    id = Column(Integer, primary_key=True)
    company_name = Column(String(100), nullable=False)
    logo_url = Column(String(500), default="")
    adresse = Column(String(300), default="")
    telephone = Column(String(30), default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True)
    entity = Column(String(30), nullable=False, index=True)
    entity_id = Column(Integer, index=True)
    action = Column(String(30), nullable=False)
    payload = Column(JSON)
    user_email = Column(String(100))
    created_at = Column(DateTime, default=datetime.now, index=True)
