"""Generate a synthetic structure catalog for demos and tests."""

import os
import random

import pandas as pd

# (municipality, city, centre lat, centre lng)
MUNICIPALITIES = [
    ("Central", "Tripoli", 32.8872, 13.1913),
    ("Souq Al Juma", "Tripoli", 32.9050, 13.2300),
    ("Janzour", "Janzour", 32.8170, 13.0100),
    ("Tajoura", "Tajoura", 32.8820, 13.3500),
]

SIZES = ["13x5", "12x4", "10x4", "8x3", "4x3"]
AD_TYPES = ["Billboard", "Unipole", "Wall"]


def generate_structures_df(count: int = 200, seed: int = 42) -> pd.DataFrame:
    """Structures scattered within ~3km of each municipality centre.

    Roughly 2% have no coordinates and 2% are marked removed, as in real exports.
    """
    rng = random.Random(seed)
    rows = []
    for i in range(1, count + 1):
        muni, city, lat0, lng0 = rng.choice(MUNICIPALITIES)
        lat = lat0 + rng.uniform(-0.027, 0.027)
        lng = lng0 + rng.uniform(-0.032, 0.032)
        roll = rng.random()
        rows.append({
            "ID": i,
            "Billboard_Name": f"SB-{i:04d}",
            "Size": rng.choice(SIZES),
            "Municipality": muni,
            "City": city,
            "Ad_Type": rng.choice(AD_TYPES),
            "GPS_Coordinates": "" if roll < 0.02 else f"{lat:.6f}, {lng:.6f}",
            "Status": "removed" if 0.02 <= roll < 0.04 else "active",
        })
    return pd.DataFrame(rows)


def generate_sample_csv(output_dir: str):
    """Write the sample catalog to the given directory."""
    os.makedirs(output_dir, exist_ok=True)
    generate_structures_df().to_csv(os.path.join(output_dir, "structures.csv"), index=False)


def generate_sample_excel(output_dir: str):
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, "structures.xlsx")
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        generate_structures_df().to_excel(writer, sheet_name="Structures", index=False)


if __name__ == "__main__":
    out = os.path.join(os.path.dirname(__file__), "..", "sample_files")
    generate_sample_csv(out)
    generate_sample_excel(out)
    print("Sample CSV and Excel files generated in sample_files/")
