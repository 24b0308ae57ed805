#!/usr/bin/env python3
"""
Create a sample student workbook for trying out the upload endpoint.

Besides the four base columns the sheet carries a few extra ones (house,
uniform sizes, parent phone) so an upload also exercises dynamic columns.
"""
import io
import random
import sys

import pandas as pd
from faker import Faker

CLASSES = ['6', '7', '8', '9', '10', '11', '12']
SECTIONS = ['A', 'B']
HOUSES = ['Aravali', 'Nilgiri', 'Shivalik', 'Udaigiri']
SHIRT_SIZES = ['26', '28', '30', '32', '34', '36', '38']
TROUSER_SIZES = ['22', '24', '26', '28', '30', '32']


def build_student_frame(count=50, seed=None):
    """Build a DataFrame of `count` fake students."""
    fake = Faker('en_IN')
    rng = random.Random(seed)
    if seed is not None:
        fake.seed_instance(seed)

    students = []
    for i in range(count):
        class_num = rng.choice(CLASSES)
        section = rng.choice(SECTIONS)
        students.append({
            'student_id': f"STU{class_num.zfill(2)}{section}{str(i + 1).zfill(4)}",
            'name': fake.name(),
            'class': f"Class {class_num}{section}",
            'section': section,
            'house': rng.choice(HOUSES),
            'shirt_size': rng.choice(SHIRT_SIZES),
            'trouser_size': rng.choice(TROUSER_SIZES),
            'parent_phone': fake.phone_number(),
        })

    return pd.DataFrame(students)


def to_xlsx_bytes(df):
    buffer = io.BytesIO()
    df.to_excel(buffer, index=False, engine='openpyxl')
    return buffer.getvalue()


def create_test_data(output_file='students_test_data.xlsx', count=200, seed=None):
    df = build_student_frame(count, seed)
    df.to_excel(output_file, index=False, engine='openpyxl')

    print(f"Test data created: '{output_file}'")
    print(f"Total students: {len(df)}")
    print("Class-wise distribution:")
    for class_name, size in df.groupby('class').size().items():
        print(f"   {class_name}: {size} students")
    return output_file, df


if __name__ == '__main__':
    count = int(sys.argv[1]) if len(sys.argv) > 1 else 200
    create_test_data(count=count)
