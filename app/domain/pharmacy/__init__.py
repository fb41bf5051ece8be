# Pharmacy domain module: drugs, batches, prescriptions and dispensing
