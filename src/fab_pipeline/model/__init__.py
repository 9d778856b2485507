"""Model crates: geometry, materials, transforms, colliders, glTF I/O."""
