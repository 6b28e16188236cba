"""Still image writers: BMP, PNG, raw YUV/RGB, JPEG and DNG."""