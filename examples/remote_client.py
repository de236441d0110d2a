"""
Example: Remote Client

Creates two tensors on a remote executor, adds and multiplies them there,
and only copies the results back at the end.

Start an executor first:
    rtensor-server -p 3000

Then run:
    REMOTE_BACKEND_URL=tcp://localhost:3000 python examples/remote_client.py
"""

import numpy as np

import rtensor
from rtensor import Distribution


print("=" * 70)
print("rtensor Example: Remote Client")
print("=" * 70)
print()

device = rtensor.default_device()
print(f"Connected: {device}")
print()

# Both tensors live on the executor; only handles exist here
a = rtensor.ones((3, 3))
b = rtensor.random((3, 3), Distribution.uniform(-1.0, 1.0))
print(f"A: shape={a.shape} dtype={a.dtype}")
print(f"B: shape={b.shape} dtype={b.dtype}")
print()

c = a + b
d = a @ b

# Sync points: data comes back over the wire
print("A + B =")
print(c.numpy())
print()
print("A @ B =")
print(d.numpy())
print()

# The same math on the host, for comparison
a_np, b_np = a.numpy(), b.numpy()
assert np.allclose(c.numpy(), a_np + b_np)
assert np.allclose(d.numpy(), a_np @ b_np, rtol=1e-5)
print("Results match numpy")

# Remote tensors are freed when the last Python reference goes away,
# or all at once here
rtensor.disconnect()
