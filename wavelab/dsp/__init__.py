"""
Numeric engines executed inside compute workers.

- pixels: RGBA decoding, bounded resizing and luminance conversion
- transform: separable 2D FFT with native and portable backends
- spectrum: DC shift, component extraction and visualization statistics
- mixer: region-masked frequency-domain composition of images
- beam: phased-array element expansion and interference fields
- histogram: spectral component histograms
"""
