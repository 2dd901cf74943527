"""
Administrative geography: Region -> Province -> City/Municipality -> Barangay.

Rows are produced by the reference-geography importer; the pipeline only
reads them. ``psa_code`` / ``psa_name`` hold the statistics authority's
external code and official name, ``name`` the commonly used one.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base


class Region(Base):
    __tablename__ = "regions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(20), nullable=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    abbreviation = Column(String(50), nullable=True)
    psa_code = Column(String(20), nullable=True, index=True)
    psa_name = Column(String(255), nullable=True)

    provinces = relationship("Province", back_populates="region")


class Province(Base):
    __tablename__ = "provinces"

    id = Column(Integer, primary_key=True, autoincrement=True)
    region_id = Column(Integer, ForeignKey("regions.id"), nullable=True, index=True)
    code = Column(String(20), nullable=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    abbreviation = Column(String(50), nullable=True)
    psa_code = Column(String(20), nullable=True, index=True)
    psa_name = Column(String(255), nullable=True)

    region = relationship("Region", back_populates="provinces")
    cities = relationship("City", back_populates="province")


class City(Base):
    __tablename__ = "cities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    province_id = Column(Integer, ForeignKey("provinces.id"), nullable=True, index=True)
    code = Column(String(20), nullable=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    type = Column(String(50), nullable=True)  # city, municipality, sub-municipality
    zip_code = Column(String(10), nullable=True)
    psa_code = Column(String(20), nullable=True, index=True)
    psa_name = Column(String(255), nullable=True)

    province = relationship("Province", back_populates="cities")
    barangays = relationship("Barangay", back_populates="city")


class Barangay(Base):
    __tablename__ = "barangays"

    id = Column(Integer, primary_key=True, autoincrement=True)
    city_id = Column(Integer, ForeignKey("cities.id"), nullable=True, index=True)
    code = Column(String(20), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    psa_code = Column(String(20), nullable=True, index=True)
    psa_name = Column(String(255), nullable=True)

    city = relationship("City", back_populates="barangays")

    __table_args__ = (
        Index("idx_barangay_city_name", "city_id", "name"),
    )
