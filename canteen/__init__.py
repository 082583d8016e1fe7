# Canteen backend core - notification & event fan-out plane
