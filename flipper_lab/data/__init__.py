"""
Bar and instrument schemas, plus CSV contract management.

Handles converting canonical price frames into ordered bar sequences and reading
and writing price-history CSVs with strict schema validation.
"""
