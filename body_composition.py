"""Body composition formulas for the Mi Body Composition Scale.

These are the empirical, reverse-engineered formulas used by the scale's
companion app (see https://github.com/prototux/MIBCS-reverse-engineering).
Constants and branch conditions, including the odd outlier markers (body fat
forced to 75, bone mass to 8, lean body mass to 120), are kept as the app
reports them.

Impedance must be positive; callers check this before calculating.
"""

from dataclasses import dataclass

from models import Gender


@dataclass(frozen=True)
class BodyComposition:
    """Calculated body composition metrics."""
    body_fat_pct: float
    water_pct: float
    muscle_mass_kg: float
    bone_mass_kg: float
    visceral_fat: float
    lean_body_mass_kg: float
    bmi: float


def lbm_coefficient(weight_kg: float, impedance_ohm: float, height_cm: float, age: int) -> float:
    """Lean body mass coefficient shared by the other metrics."""
    lbm = (height_cm * 9.058 / 100.0) * (height_cm / 100.0)
    lbm += weight_kg * 0.32 + 12.226
    lbm -= impedance_ohm * 0.0068
    lbm -= age * 0.0542
    return lbm


def bmi(weight_kg: float, height_cm: float) -> float:
    return weight_kg / (height_cm / 100.0) ** 2


def body_fat(weight_kg: float, impedance_ohm: float, height_cm: float, age: int, gender: Gender) -> float:
    """Body fat percentage."""
    lbm_sub = 0.8
    if gender is Gender.FEMALE and age <= 49:
        lbm_sub = 9.25
    elif gender is Gender.FEMALE and age > 49:
        lbm_sub = 7.25

    coeff = 1.0
    if gender is Gender.MALE and weight_kg < 61.0:
        coeff = 0.98
    elif gender is Gender.FEMALE and weight_kg > 60.0:
        coeff = 0.96
        if height_cm > 160.0:
            coeff *= 1.03
    elif gender is Gender.FEMALE and weight_kg < 50.0:
        coeff = 1.02
        if height_cm > 160.0:
            coeff *= 1.03

    lbm = lbm_coefficient(weight_kg, impedance_ohm, height_cm, age)
    fat = (1.0 - ((lbm - lbm_sub) * coeff) / weight_kg) * 100.0

    if fat > 63.0:
        fat = 75.0
    return fat


def water(weight_kg: float, impedance_ohm: float, height_cm: float, age: int, gender: Gender) -> float:
    """Body water percentage."""
    value = (100.0 - body_fat(weight_kg, impedance_ohm, height_cm, age, gender)) * 0.7
    # the correction is chosen on the unscaled value
    coeff = 1.02 if value < 50 else 0.98
    return value * coeff


def bone_mass(weight_kg: float, impedance_ohm: float, height_cm: float, age: int, gender: Gender) -> float:
    """Bone mass in kg."""
    base = 0.245691014 if gender is Gender.FEMALE else 0.18016894
    mass = (base - lbm_coefficient(weight_kg, impedance_ohm, height_cm, age) * 0.05158) * -1.0

    if mass > 2.2:
        mass += 0.1
    else:
        mass -= 0.1

    if gender is Gender.FEMALE and mass > 5.1:
        mass = 8.0
    elif gender is Gender.MALE and mass > 5.2:
        mass = 8.0
    return mass


def lean_body_mass(weight_kg: float, impedance_ohm: float, height_cm: float, age: int, gender: Gender) -> float:
    """Lean body mass in kg: weight minus fat mass and bone mass."""
    fat_pct = body_fat(weight_kg, impedance_ohm, height_cm, age, gender)
    lbm = weight_kg - (fat_pct * 0.01 * weight_kg) - bone_mass(weight_kg, impedance_ohm, height_cm, age, gender)

    if gender is Gender.FEMALE and lbm >= 84.0:
        lbm = 120.0
    elif gender is Gender.MALE and lbm >= 93.5:
        lbm = 120.0
    return lbm


def muscle_mass(weight_kg: float, impedance_ohm: float, height_cm: float, age: int, gender: Gender) -> float:
    """Muscle mass in kg. The companion app reports lean body mass here."""
    return lean_body_mass(weight_kg, impedance_ohm, height_cm, age, gender)


def visceral_fat(weight_kg: float, height_cm: float, age: int, gender: Gender) -> float:
    """Visceral fat rating (unitless). Does not depend on impedance."""
    if gender is Gender.FEMALE:
        if weight_kg > (13.0 - height_cm * 0.5) * -1.0:
            denom = (height_cm * 1.45 + height_cm * 0.1158 * height_cm) - 120.0
            return (weight_kg * 500.0 / denom - 6.0) + age * 0.07
        k = 0.691 + height_cm * -0.0024 + height_cm * -0.0024
        return ((height_cm * 0.027 - k * weight_kg) * -1.0) + age * 0.07 - age

    if height_cm < weight_kg * 1.6:
        denom = ((height_cm * 0.4) - (height_cm * (height_cm * 0.0826))) * -1.0
        return (weight_kg * 305.0) / (denom + 48.0) - 2.9 + age * 0.15
    k = 0.765 + height_cm * -0.0015
    return ((height_cm * 0.143 - weight_kg * k) * -1.0) + age * 0.15 - 5.0


def calculate_body_composition(
    weight_kg: float,
    impedance_ohm: float,
    height_cm: float,
    age: int,
    gender: Gender,
) -> BodyComposition:
    """Calculate all body composition metrics for one weighing.

    Values are not rounded; display code decides on precision.
    """
    return BodyComposition(
        body_fat_pct=body_fat(weight_kg, impedance_ohm, height_cm, age, gender),
        water_pct=water(weight_kg, impedance_ohm, height_cm, age, gender),
        muscle_mass_kg=muscle_mass(weight_kg, impedance_ohm, height_cm, age, gender),
        bone_mass_kg=bone_mass(weight_kg, impedance_ohm, height_cm, age, gender),
        visceral_fat=visceral_fat(weight_kg, height_cm, age, gender),
        lean_body_mass_kg=lean_body_mass(weight_kg, impedance_ohm, height_cm, age, gender),
        bmi=bmi(weight_kg, height_cm),
    )
