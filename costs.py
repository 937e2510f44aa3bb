# costs.py

ROUND_TRIP_FACTOR = 2
WORKING_DAYS      = 22
KM_PER_LITRE      = 12
RIDE_HAILING_DAILY_PKR = 9000


def monthly_costs(distance_km: float, people: int, petrol_price: float) -> dict:
    """
    Monthly fuel cost of a shared commute and what each passenger saves
    against taking a ride-hailing car every working day.
    """
    if distance_km <= 0:
        raise ValueError("distance_km must be positive")
    if people < 1:
        raise ValueError("people must be at least 1")

    monthly_km     = distance_km * ROUND_TRIP_FACTOR * WORKING_DAYS
    monthly_petrol = monthly_km / KM_PER_LITRE * petrol_price
    per_person     = monthly_petrol / people
    ride_hailing   = RIDE_HAILING_DAILY_PKR * WORKING_DAYS

    return {
        "monthly_petrol": round(monthly_petrol, 2),
        "total_cost": round(monthly_petrol, 2),
        "per_person": round(per_person, 2),
        "ride_hailing_monthly": ride_hailing,
        "savings": round(ride_hailing - per_person, 2),
    }
