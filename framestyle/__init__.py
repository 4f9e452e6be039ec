"""framestyle: per-frame neural style transfer from an exported style graph.

The exported graph is rewritten once into a fixed-shape inference graph. Style
conditioning (per-layer alpha/beta vectors) is computed by running the style
prediction sub-network once per style and patched into the compiled graph
in place, so changing styles never triggers a rebuild.
"""
