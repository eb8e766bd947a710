from datetime import timedelta
from db import init_db, get_session
from models import User, Ride, RideRequest, utc_now
import random

# Denton -> Dallas corridor
DENTON = (33.2148, -97.1331)
DALLAS = (32.7767, -96.7970)


def _jitter(point, spread):
    return (
        point[0] + (random.random() - 0.5) * spread,
        point[1] + (random.random() - 0.5) * spread,
    )


def seed(drivers=5, riders=20, seed_value=None):
    rng_state = random.getstate()
    if seed_value is not None:
        random.seed(seed_value)
    try:
        init_db()
        session = get_session()
        users = [User(name=f"driver{i}") for i in range(1, drivers + 1)]
        users += [User(name=f"rider{i}") for i in range(1, riders + 1)]
        session.add_all(users)
        session.commit()
        base = utc_now() + timedelta(hours=1)
        for i, driver in enumerate(users[:drivers]):
            pickup = _jitter(DENTON, 0.04)
            dest = _jitter(DALLAS, 0.04)
            session.add(Ride(
                driver_id=driver.id,
                pickup_lat=pickup[0],
                pickup_lng=pickup[1],
                dest_lat=dest[0],
                dest_lng=dest[1],
                scheduled_time=base + timedelta(minutes=random.randint(-20, 20)),
                seats_total=3,
                seats_available=3,
            ))
        for rider in users[drivers:]:
            pickup = _jitter(DENTON, 0.04)
            dest = _jitter(DALLAS, 0.04)
            session.add(RideRequest(
                rider_id=rider.id,
                pickup_lat=pickup[0],
                pickup_lng=pickup[1],
                dest_lat=dest[0],
                dest_lng=dest[1],
                scheduled_time=base + timedelta(minutes=random.randint(-20, 20)),
                seats_needed=random.choice([1, 1, 2]),
            ))
        session.commit()
        session.close()
    finally:
        random.setstate(rng_state)
    print("Seeded sample data")


if __name__ == "__main__":
    seed()
