"""
Image build components for limage.

- build_profiles: cargo arguments per build profile
- kernel: kernel build through cargo
- staging: the staging tree mirrored into the ISO
- filesystem: optional raw filesystem image attached to the VM
- assembler: ties the stages together and packages the ISO
"""
