import subprocess
import sys

scripts = [
    "init_schema_v1.py",
]

for script in scripts:
    print(f"▶️ Running {script}...")
    subprocess.run([sys.executable, f"migrations/{script}"], check=True)

print("✅ All migrations completed!")
